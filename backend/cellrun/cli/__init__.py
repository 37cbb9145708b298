"""Command-line tools: ``python -m cellrun.cli.<name>``."""
