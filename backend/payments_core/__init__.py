"""Provider-agnostic billing core."""

__version__ = "0.1.0"
