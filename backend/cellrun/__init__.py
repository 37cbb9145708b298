"""cellrun — embedded code-execution engine for notebook script and query cells."""

__version__ = "0.1.0"
