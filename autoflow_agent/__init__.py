"""AutoFlow agent: natural-language requests compiled into Activepieces flows."""

__version__ = "0.1.0"
