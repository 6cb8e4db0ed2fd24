"""Natural-language query engine for transaction report documents."""

__version__ = "1.0.0"
