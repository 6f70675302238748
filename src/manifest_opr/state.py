"""Run state tracking for manifest-based orchestration.

Tracks per-node lifecycle status during one plan/apply run:

    pending -> applying -> applied | failed
    pending -> destroying -> destroyed | failed
    pending -> skipped (a dependency failed, or the run was cancelled)

The realized resource attributes that outlive a run are persisted by the
state backends in manifest_opr/backend.py.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

PENDING = 'pending'
APPLYING = 'applying'
APPLIED = 'applied'
DESTROYING = 'destroying'
DESTROYED = 'destroyed'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class NodeState:
    """Per-node execution state for one run.

    Attributes:
        address: Node address (matches ResourceNode.address)
        action: Planned action being executed (create, update, replace, destroy)
        status: Current status (see module docstring)
        resource_id: Provider id once known
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Error message if failed or reason if skipped
    """
    address: str
    action: str = ''
    status: str = PENDING
    resource_id: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = DESTROYING if self.action == 'destroy' else APPLYING
        self.started_at = time.time()

    def complete(self, resource_id: Optional[str] = None) -> None:
        self.status = APPLIED
        self.completed_at = time.time()
        if resource_id is not None:
            self.resource_id = resource_id

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.completed_at = time.time()
        self.error = reason

    def mark_destroyed(self) -> None:
        self.status = DESTROYED
        self.completed_at = time.time()

    @property
    def succeeded(self) -> bool:
        return self.status in (APPLIED, DESTROYED)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
        }
        if self.resource_id is not None:
            d['id'] = self.resource_id
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


class RunState:
    """Run-level execution state.

    Thread-safe registry of NodeStates; the executor updates it from worker
    threads.
    """

    def __init__(self, manifest_name: str, operation: str):
        """Initialize run state.

        Args:
            manifest_name: Manifest identifier
            operation: 'apply' or 'destroy'
        """
        self.manifest_name = manifest_name
        self.operation = operation
        self._nodes: dict[str, NodeState] = {}
        self._lock = threading.Lock()
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.cancelled = False

    def add_node(self, address: str, action: str) -> NodeState:
        """Register a node for tracking."""
        with self._lock:
            state = NodeState(address=address, action=action)
            self._nodes[address] = state
            return state

    def get_node(self, address: str) -> NodeState:
        """Get node state by address.

        Raises:
            KeyError: If node not registered
        """
        return self._nodes[address]

    @property
    def nodes(self) -> dict[str, NodeState]:
        with self._lock:
            return dict(self._nodes)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    @property
    def success(self) -> bool:
        return not self.cancelled and all(n.succeeded for n in self.nodes.values())

    def count(self, status: str) -> int:
        return sum(1 for n in self.nodes.values() if n.status == status)

    def summary(self) -> str:
        parts = [f"{self.count(s)} {s}" for s in (APPLIED, DESTROYED, FAILED, SKIPPED)
                 if self.count(s)]
        return ', '.join(parts) if parts else 'nothing to do'

    def to_dict(self) -> dict:
        duration = None
        if self.started_at and self.completed_at:
            duration = round(self.completed_at - self.started_at, 2)
        return {
            'manifest': self.manifest_name,
            'operation': self.operation,
            'success': self.success,
            'cancelled': self.cancelled,
            'duration_seconds': duration,
            'nodes': [n.to_dict() for n in self.nodes.values()],
        }
