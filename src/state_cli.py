"""State inspection CLI.

Usage:
    iac-engine state list -M <manifest>
    iac-engine state show -M <manifest> <address>
    iac-engine state pull -M <manifest>
    iac-engine state unlock -M <manifest> <lock-id> [--yes]
"""

import argparse
import json
import sys

from config import ConfigError, load_engine_config
from manifest_opr.backend import LockError, StateError, get_backend


def list_resources(backend) -> int:
    """Print every address in state with its provider id."""
    document = backend.load()
    if document.is_empty:
        print("State is empty.")
        return 0
    width = max(len(a) for a in document.resources)
    for address, resource in sorted(document.resources.items()):
        print(f"{address:<{width}}  {resource.id}")
    return 0


def show_resource(backend, address: str) -> int:
    """Print one resource as JSON."""
    resource = backend.load().get(address)
    if resource is None:
        print(f"Error: No resource '{address}' in state")
        return 1
    print(json.dumps({'address': address, **resource.to_dict()}, indent=2))
    return 0


def main(argv: list) -> int:
    """State CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="iac-engine state",
        description="Inspect and repair persisted state",
    )
    parser.add_argument("--manifest", "-M", required=True, help="Manifest name (keys the state)")
    parser.add_argument("--workspace", "-W", help="Workspace directory")
    sub = parser.add_subparsers(dest="action")

    sub.add_parser("list", help="List resources in state")

    show_parser = sub.add_parser("show", help="Show one resource")
    show_parser.add_argument("address", help="Resource address (type.name)")

    sub.add_parser("pull", help="Print the whole state document")

    unlock_parser = sub.add_parser("unlock", help="Remove a stale state lock")
    unlock_parser.add_argument("lock_id", help="Lock ID reported by the failed run")
    unlock_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation prompt")

    args = parser.parse_args(argv)

    if not args.action:
        parser.print_help()
        return 1

    try:
        config = load_engine_config(args.workspace)
        backend = get_backend(config, args.manifest)

        if args.action == "list":
            return list_resources(backend)

        if args.action == "show":
            return show_resource(backend, args.address)

        if args.action == "pull":
            print(json.dumps(backend.load().to_dict(), indent=2))
            return 0

        if args.action == "unlock":
            if not args.yes:
                print(f"Removing lock {args.lock_id} on {backend.describe()}.")
                print("Only do this if no other run is in progress.")
                response = input("Continue? [y/N] ").strip().lower()
                if response != 'y':
                    print("Aborted.")
                    return 1
            backend.force_unlock(args.lock_id)
            print(f"Lock {args.lock_id} removed.")
            return 0
    except (ConfigError, StateError, LockError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 1
