"""fixloop -- sandboxed JavaScript execution with an LLM repair loop."""

__version__ = "0.1.0"
