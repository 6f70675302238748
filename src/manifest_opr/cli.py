"""CLI handlers for manifest verb commands (plan, apply, destroy, validate, graph).

Usage:
    iac-engine manifest plan -M <manifest> [--var k=v] [--detailed-exitcode] [--json-output]
    iac-engine manifest apply -M <manifest> [--dry-run] [--parallelism N] [--report-dir DIR]
    iac-engine manifest destroy -M <manifest> [--dry-run] [--yes]
    iac-engine manifest validate -M <manifest> [--check-backend]
    iac-engine manifest graph -M <manifest> [--levels]
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Optional

from config import ConfigError, EngineConfig, load_engine_config
from manifest import Manifest, load_manifest
from manifest_opr.backend import LockError, StateError
from manifest_opr.engine import Engine
from manifest_opr.graph import ResourceGraph
from manifest_opr.plan import Plan, PlanError, format_plan
from manifest_opr.state import RunState
from providers.base import ProviderError
from reporting import RunReport
from validation import run_preflight_checks, validate_manifest

logger = logging.getLogger(__name__)

# Errors reported as a one-line message and exit code 1
ENGINE_ERRORS = (ConfigError, PlanError, LockError, StateError, ProviderError)


def _add_manifest_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--manifest', '-M',
        help='Manifest name from <workspace>/manifests/',
    )
    parser.add_argument(
        '--manifest-file',
        help='Path to manifest file',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline manifest JSON',
    )
    parser.add_argument(
        '--workspace', '-W',
        help='Workspace directory (default: $IAC_ENGINE_HOME or current directory)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for plan/apply/destroy."""
    parser = argparse.ArgumentParser(
        prog=f'iac-engine manifest {verb}',
        description=f'{verb.capitalize()} infrastructure from manifest',
    )
    _add_manifest_args(parser)
    parser.add_argument(
        '--var',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Set a manifest variable (repeatable)',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Diff against persisted state without reading live resources',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    return parser


def _add_run_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--parallelism',
        type=int,
        help='Maximum concurrent node operations (overrides engine.yaml)',
    )
    parser.add_argument(
        '--report-dir',
        help='Write JSON and Markdown run reports to this directory',
    )


def _setup_logging(verbose: bool, json_output: bool = False) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _coerce(value: str, default: Any) -> Any:
    """Convert a --var string to the type of the variable's default."""
    if isinstance(default, bool):
        if value.lower() in ('true', 'yes', '1'):
            return True
        if value.lower() in ('false', 'no', '0'):
            return False
        raise ConfigError(f"Expected a boolean, got '{value}'")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"Expected an integer, got '{value}'")
    if isinstance(default, float):
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"Expected a number, got '{value}'")
    return value


def parse_vars(pairs: list[str], manifest: Manifest) -> dict[str, Any]:
    """Parse --var NAME=VALUE pairs, typed after the declared defaults.

    Raises:
        ConfigError: If a pair is malformed or a value has the wrong type
    """
    result: dict[str, Any] = {}
    for pair in pairs:
        if '=' not in pair:
            raise ConfigError(f"Invalid --var '{pair}', expected NAME=VALUE")
        name, value = pair.split('=', 1)
        name = name.strip()
        var = manifest.variables.get(name)
        default = var.default if var is not None else None
        try:
            result[name] = _coerce(value, default)
        except ConfigError as e:
            raise ConfigError(f"Variable '{name}': {e}")
    return result


def _load(args) -> tuple[Manifest, EngineConfig]:
    """Load engine config and manifest from parsed args.

    Raises:
        ConfigError: If no manifest source is given or loading fails
    """
    if not args.manifest and not args.manifest_file and not args.manifest_json:
        raise ConfigError("specify a manifest with -M, --manifest-file, or --manifest-json")

    config = load_engine_config(args.workspace)
    if getattr(args, 'parallelism', None) is not None:
        if args.parallelism < 1:
            raise ConfigError(f"--parallelism must be >= 1, got {args.parallelism}")
        config.parallelism = args.parallelism

    manifest = load_manifest(
        config.manifests_dir,
        name=args.manifest,
        file_path=args.manifest_file,
        json_str=args.manifest_json,
    )
    return manifest, config


def _run_preflight(args, config: EngineConfig, manifest: Manifest) -> Optional[int]:
    """Run preflight checks for plan/apply/destroy.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight:
        return None

    errors, _ = run_preflight_checks(config, manifest)
    if errors:
        print("\nPre-flight validation failed:", file=sys.stderr)
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}", file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks", file=sys.stderr)
        return 1
    logger.info("Pre-flight validation passed")
    return None


def _emit_json(verb: str, success: bool, plan: Plan, state: RunState,
               duration: float, outputs: dict) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'manifest': plan.manifest_name,
        'success': success,
        'duration_seconds': round(duration, 2),
        'plan': plan.summary(),
        'nodes': [ns.to_dict() for ns in state.nodes.values()],
        'outputs': outputs,
    }
    if state.cancelled:
        output['cancelled'] = True
    print(json.dumps(output, indent=2))


def _print_outputs(outputs: dict) -> None:
    if not outputs:
        return
    print("\nOutputs:")
    for name, value in sorted(outputs.items()):
        rendered = value if isinstance(value, str) else json.dumps(value)
        print(f"  {name} = {rendered}")


def _install_interrupt_handler(cancel: threading.Event):
    """First Ctrl-C stops scheduling new nodes; running nodes finish."""
    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received, finishing running nodes (Ctrl-C again to abort)")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGINT, _handler)


def plan_main(argv: list) -> int:
    """Handle 'manifest plan' verb."""
    parser = _common_parser('plan')
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan destruction of every resource in state',
    )
    parser.add_argument(
        '--detailed-exitcode',
        action='store_true',
        help='Exit 2 when the plan has changes (0 = no changes, 1 = error)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load(args)
        preflight_rc = _run_preflight(args, config, manifest)
        if preflight_rc is not None:
            return preflight_rc
        engine = Engine(config, manifest, variables=parse_vars(args.var, manifest))
        plan = engine.plan(destroy=args.destroy, refresh=not args.no_refresh)
    except ENGINE_ERRORS as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        if plan.has_changes:
            print(f"\nPlan for manifest '{manifest.name}':\n")
            for line in format_plan(plan):
                print(line)
        else:
            print(f"\nNo changes. '{manifest.name}' matches the declared configuration.")
        for change in plan.drift:
            logger.warning(f"Drift detected on {change.address}: "
                           f"{', '.join(d.attribute for d in change.drift)}")

    if args.detailed_exitcode and plan.has_changes:
        return 2
    return 0


def _run(verb: str, argv: list) -> int:
    """Shared body of apply and destroy."""
    destroy = verb == 'destroy'
    parser = _common_parser(verb)
    _add_run_args(parser)
    if destroy:
        parser.add_argument(
            '--yes', '-y',
            action='store_true',
            help='Skip confirmation prompt',
        )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, config = _load(args)
        if not args.dry_run:
            preflight_rc = _run_preflight(args, config, manifest)
            if preflight_rc is not None:
                return preflight_rc
        engine = Engine(config, manifest, variables=parse_vars(args.var, manifest))
    except ENGINE_ERRORS as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Confirmation for destructive operation
    if destroy and not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy all resources in manifest '{manifest.name}'.")
        print(f"State: {engine.backend.describe()}")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    report = None
    if args.report_dir and not args.dry_run:
        report = RunReport(manifest=manifest.name, operation=verb,
                           report_dir=Path(args.report_dir), provider=engine.provider.name)
        report.start()

    logger.info(f"{'Destroying' if destroy else 'Applying'} manifest '{manifest.name}' "
                f"(provider: {engine.provider.name}, parallelism: {config.parallelism})")

    cancel = threading.Event()
    previous = None if args.dry_run else _install_interrupt_handler(cancel)
    start = time.time()
    try:
        success, plan, state = engine.apply(destroy=destroy, dry_run=args.dry_run,
                                            cancel=cancel, refresh=not args.no_refresh)
    except ENGINE_ERRORS as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
    duration = time.time() - start

    outputs = {} if args.dry_run else engine.backend.load().outputs
    if report is not None:
        report.record(plan, state)
        report.outputs = outputs
        for path in report.finish(success):
            logger.info(f"Report written to {path}")

    if args.json_output:
        _emit_json(verb, success, plan, state, duration, outputs)
    elif not args.dry_run:
        print(f"\n{verb.capitalize()} {'complete' if success else 'failed'}: {state.summary()}")
        for address, ns in state.nodes.items():
            if ns.error:
                print(f"  ✗ {address}: {ns.error}")
        _print_outputs(outputs)

    return 0 if success else 1


def apply_main(argv: list) -> int:
    """Handle 'manifest apply' verb."""
    return _run('apply', argv)


def destroy_main(argv: list) -> int:
    """Handle 'manifest destroy' verb."""
    return _run('destroy', argv)


def validate_main(argv: list) -> int:
    """Handle 'manifest validate' verb.

    Loading already rejects structural problems (cycles, dangling references,
    duplicates). On top of that every node is checked against its type schema.
    """
    parser = argparse.ArgumentParser(
        prog='iac-engine manifest validate',
        description='Validate manifest structure and resource attributes',
    )
    _add_manifest_args(parser)
    parser.add_argument(
        '--check-backend',
        action='store_true',
        help='Also check that the state backend is reachable',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        manifest, config = _load(args)
    except ConfigError as e:
        print(f"Error loading manifest: {e}", file=sys.stderr)
        return 1

    if args.check_backend:
        errors, warnings = run_preflight_checks(config, manifest)
    else:
        errors, warnings = validate_manifest(manifest)

    for warning in warnings:
        print(f"  ! {warning}")

    if errors:
        print(f"Manifest '{manifest.name}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        return 1

    node_count = len(manifest.nodes)
    print(f"Manifest '{manifest.name}' is valid ({node_count} node{'s' if node_count != 1 else ''})")
    return 0


def graph_main(argv: list) -> int:
    """Handle 'manifest graph' verb: print the dependency graph."""
    parser = argparse.ArgumentParser(
        prog='iac-engine manifest graph',
        description='Print the resource dependency graph',
    )
    _add_manifest_args(parser)
    parser.add_argument(
        '--levels',
        action='store_true',
        help='Print parallel waves instead of DOT',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, _ = _load(args)
        graph = ResourceGraph(manifest)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        print(json.dumps({
            'manifest': manifest.name,
            'nodes': [
                {
                    'address': n.address,
                    'depth': n.depth,
                    'dependencies': sorted(graph.dependencies(n.address)),
                }
                for n in graph.create_order()
            ],
            'levels': [[n.address for n in wave] for wave in graph.levels()],
        }, indent=2))
    elif args.levels:
        for i, wave in enumerate(graph.levels()):
            print(f"[{i}] {', '.join(n.address for n in wave)}")
    else:
        print(graph.to_dot())
    return 0
