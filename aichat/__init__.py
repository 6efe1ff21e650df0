"""Backend-agnostic conversation state for chat clients."""

__version__ = "0.1.0"
