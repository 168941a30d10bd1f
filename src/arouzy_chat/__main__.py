"""
Main entry point for running the Arouzy chat server as a module.

    python -m arouzy_chat --port 3001

The installed CLI command is equivalent:
    arouzy-chat-server --port 3001
"""

from .cli import cli_main

if __name__ == "__main__":
    cli_main()
