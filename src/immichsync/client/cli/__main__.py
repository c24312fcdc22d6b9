"""Allow running the CLI with python -m immichsync.client.cli."""

from immichsync.client.cli import main

main()
