#!/usr/bin/env python3
"""CLI entry point for iac-reconciler.

Verbs:
- plan: Show the actions needed to reconcile a manifest
- apply: Reconcile infrastructure with a manifest
- destroy: Delete every recorded resource
- validate: Check a manifest without touching providers or state
- state: Inspect recorded state (list/show)
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

VERB_COMMANDS = {
    "plan": "Show the actions needed to reconcile a manifest",
    "apply": "Reconcile infrastructure with a manifest",
    "destroy": "Delete every recorded resource of the stack",
    "validate": "Validate manifest structure and provider coverage",
    "state": "Inspect recorded state (list/show)",
}


def get_version() -> str:
    """Get the installed distribution version."""
    try:
        return version('iac-reconciler')
    except PackageNotFoundError:
        return 'dev'


def print_usage():
    """Print top-level usage showing verb commands."""
    print(f"iac-reconciler {get_version()}")
    print()
    print("Usage: iac-reconciler <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'iac-reconciler <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-reconciler plan -M platform")
    print("  iac-reconciler apply -M platform --var enable_addon=true -j 8")
    print("  iac-reconciler destroy --yes")
    print("  iac-reconciler state show cluster")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to the verb-specific CLI handler.

    Args:
        verb: The verb command (e.g., "plan", "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from reconciler import cli as verbs

    handlers = {
        "plan": verbs.plan_main,
        "apply": verbs.apply_main,
        "destroy": verbs.destroy_main,
        "validate": verbs.validate_main,
        "state": verbs.state_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv=None) -> int:
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg in ('-h', '--help'):
        print_usage()
        return 0
    if first_arg == '--version':
        print(f"iac-reconciler {get_version()}")
        return 0
    if first_arg in VERB_COMMANDS:
        return dispatch_verb(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 2


if __name__ == '__main__':
    sys.exit(main())
