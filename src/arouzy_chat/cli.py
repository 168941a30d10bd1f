"""
Command-line interface wrapper for the Arouzy chat server.

This module provides the console script entry point. It delegates to the
main() function in the server module and turns its result into an exit code.
"""

import sys

from .server import main


def cli_main() -> None:
    """
    Main CLI entry point for the arouzy-chat-server command.

    Referenced in pyproject.toml as the console script entry point.
    """
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nServer interrupted by user")
        sys.exit(0)
    except SystemExit:
        # Let SystemExit pass through as-is (from main() or argparse)
        raise
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
