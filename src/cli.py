#!/usr/bin/env python3
"""CLI entry point for iac-engine.

Supports noun-action subcommands:
- manifest: iac-engine manifest apply -M ecs-service
- state:    iac-engine state list -M ecs-service

Nouns:
- manifest: Resource graph lifecycle (plan/apply/destroy/validate/graph)
- state: Persisted state utilities (list/show/pull/unlock)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "manifest": "Resource graph lifecycle (plan/apply/destroy/validate/graph)",
    "state": "Persisted state utilities (list/show/pull/unlock)",
}

MANIFEST_ACTIONS = {
    "plan": "Show what apply would change",
    "apply": "Create or update infrastructure from manifest",
    "destroy": "Destroy infrastructure recorded in state",
    "validate": "Validate manifest structure and resource attributes",
    "graph": "Print the resource dependency graph",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def dispatch_manifest(argv: list) -> int:
    """Dispatch 'manifest' noun to action-specific handler.

    Args:
        argv: Arguments after 'manifest' (e.g., ['apply', '-M', 'ecs-service'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: iac-engine manifest <action> [options]")
        print()
        print("Actions:")
        for action, desc in MANIFEST_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'iac-engine manifest <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    from manifest_opr import cli as manifest_cli
    handlers = {
        "plan": manifest_cli.plan_main,
        "apply": manifest_cli.apply_main,
        "destroy": manifest_cli.destroy_main,
        "validate": manifest_cli.validate_main,
        "graph": manifest_cli.graph_main,
    }
    if action in handlers:
        rc: int = handlers[action](rest)
        return rc

    print(f"Error: Unknown manifest action '{action}'")
    print(f"Available actions: {', '.join(MANIFEST_ACTIONS)}")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "manifest", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "manifest":
        return dispatch_manifest(argv)

    if noun == "state":
        from state_cli import main as state_main
        rc: int = state_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, 'dev' outside a tagged checkout."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"iac-engine {get_version()}")
    print()
    print("Usage: iac-engine <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'iac-engine <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-engine manifest validate -M ecs-service")
    print("  iac-engine manifest plan -M ecs-service --var image_tag=1.1.0")
    print("  iac-engine manifest apply -M ecs-service --report-dir reports")
    print("  iac-engine manifest destroy -M ecs-service --yes")
    print("  iac-engine state list -M ecs-service")


def main(argv=None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    args = sys.argv[1:] if argv is None else argv

    if not args or args[0] in ('-h', '--help'):
        print_usage()
        return 0

    if args[0] == '--version':
        print(f"iac-engine {get_version()}")
        return 0

    if args[0] in NOUN_COMMANDS:
        return dispatch_noun(args[0], args[1:])

    print(f"Error: Unknown command '{args[0]}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
