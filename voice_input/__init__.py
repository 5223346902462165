"""Voice-input session pipeline."""

__version__ = "0.1.0"
