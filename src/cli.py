#!/usr/bin/env python3
"""CLI entry point for vpc-driver.

Verbs:
- provision: Create the three-tier topology
- deprovision: Tear it down again (discovered by project tag)
- discover: List what currently carries the project tag
"""

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

from topology.cli import VERB_DESCRIPTIONS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
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
    """Print top-level usage."""
    print("Usage: vpc-driver <verb> [options]")
    print()
    print("Verbs:")
    for verb, description in VERB_DESCRIPTIONS.items():
        print(f"  {verb:<12} {description}")
    print()
    print("Run 'vpc-driver <verb> --help' for verb-specific options.")


def dispatch(verb: str, argv: list) -> int:
    """Dispatch to verb-specific CLI handler.

    Args:
        verb: The verb (e.g., "provision")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if verb == "provision":
        from topology.cli import provision_main
        rc: int = provision_main(argv)
        return rc
    if verb == "deprovision":
        from topology.cli import deprovision_main
        rc = deprovision_main(argv)
        return rc
    if verb == "discover":
        from topology.cli import discover_main
        rc = discover_main(argv)
        return rc

    print(f"Error: Unknown command '{verb}'")
    print_usage()
    return 1


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg == '--version':
        print(f'vpc-driver {get_version()}')
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0

    return dispatch(first_arg, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
