"""Run reporting: one JSON and one Markdown file per apply/destroy."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from manifest_opr.plan import Plan
from manifest_opr.state import RunState


@dataclass
class NodeResult:
    """Outcome of one node operation."""
    address: str
    action: str
    status: str
    message: str = ''
    duration: float = 0.0


@dataclass
class RunReport:
    """Collects node results of a run and writes report files."""
    manifest: str
    operation: str
    report_dir: Path
    provider: str = ''
    nodes: list[NodeResult] = field(default_factory=list)
    drift: list[str] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def record(self, plan: Plan, run_state: RunState):
        """Collect results from a finished run."""
        for address, ns in run_state.nodes.items():
            self.nodes.append(NodeResult(
                address=address,
                action=ns.action,
                status=ns.status,
                message=ns.error or '',
                duration=ns.duration or 0.0,
            ))
        for change in plan.drift:
            for d in change.drift:
                self.drift.append(f"{change.address}.{d.attribute}")
        self.success = run_state.success

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: Optional[bool] = None) -> list[Path]:
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        if success is not None:
            self.success = success
        return [self._write_json(), self._write_markdown()]

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# {self.operation} {self.manifest}",
            "",
            f"**Provider**: {self.provider}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Nodes",
            "",
            "| Node | Action | Status | Duration | Message |",
            "|------|--------|--------|----------|---------|",
        ]
        for n in self.nodes:
            lines.append(f"| {n.address} | {n.action} | {n.status} | {n.duration:.1f}s | {n.message} |")
        if not self.nodes:
            lines.append("| - | - | no changes | - | |")

        if self.drift:
            lines.extend(["", "## Drift", ""])
            lines.extend(f"- {d}" for d in self.drift)

        if self.outputs:
            lines.extend(["", "## Outputs", ""])
            lines.extend(f"- {name} = {value}" for name, value in sorted(self.outputs.items()))

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Report filename; includes manifest and operation to avoid collisions."""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        return self.report_dir / f"{timestamp}.{self.manifest}.{self.operation}.{status}.{ext}"

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'manifest': self.manifest,
            'operation': self.operation,
            'provider': self.provider,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration, 1),
            'nodes': [
                {
                    'address': n.address,
                    'action': n.action,
                    'status': n.status,
                    'duration': round(n.duration, 1),
                    **({'message': n.message} if n.message else {}),
                }
                for n in self.nodes
            ],
        }
        if self.drift:
            result['drift'] = self.drift
        if self.outputs:
            result['outputs'] = self.outputs
        if not self.success:
            for n in self.nodes:
                if n.status == 'failed' and n.message:
                    result['error'] = n.message
                    break
        return result
