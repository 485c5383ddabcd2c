#!/usr/bin/env python3
"""CLI entry point for converge.

Supports noun-action subcommands:
- converge resource plan -f stack.yaml
- converge resource apply -f stack.yaml
- converge resource destroy --yes

Nouns:
- resource: Resource lifecycle (plan/apply/destroy/refresh/...)
"""

import logging
import subprocess
import sys
from pathlib import Path

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "resource": "Resource lifecycle (plan/apply/destroy/refresh)",
}

RESOURCE_ACTIONS = {
    "plan": "Show the actions needed to converge state to declarations",
    "apply": "Plan and execute changes",
    "destroy": "Delete every resource tracked in state",
    "validate": "Check declarations without touching state",
    "show": "Print tracked resources",
    "refresh": "Re-read provider attributes into state",
    "taint": "Force replacement of a resource on next apply",
    "untaint": "Clear a taint",
    "unlock": "Remove a lock left by a crashed run",
}

logger = logging.getLogger(__name__)


def dispatch_resource(argv: list) -> int:
    """Dispatch 'resource' noun to action-specific handler.

    Args:
        argv: Arguments after 'resource' (e.g., ['apply', '-f', 'stack.yaml'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: converge resource <action> [options]")
        print()
        print("Actions:")
        for action, desc in RESOURCE_ACTIONS.items():
            print(f"  {action:<10}{desc}")
        print()
        print("Run 'converge resource <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    if action not in RESOURCE_ACTIONS:
        print(f"Error: Unknown resource action '{action}'")
        print(f"Available actions: {', '.join(RESOURCE_ACTIONS)}")
        return 1

    from resource_opr import cli as resource_cli
    handler = getattr(resource_cli, f'{action}_main')
    rc: int = handler(rest)
    return rc


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "resource")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "resource":
        return dispatch_resource(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def get_version():
    """Get version from git tags, falling back to 'dev'."""
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
    print(f"converge {get_version()}")
    print()
    print("Usage: converge <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'converge <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  converge resource validate -f stack.yaml")
    print("  converge resource plan -f stack.yaml")
    print("  converge resource apply -f stack.yaml --json-output")
    print("  converge resource destroy --yes")


def main(argv: list | None = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0

    if argv[0] == '--version':
        print(f"converge {get_version()}")
        return 0

    if argv[0] in NOUN_COMMANDS:
        return dispatch_noun(argv[0], argv[1:])

    print(f"Error: Unknown command '{argv[0]}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
