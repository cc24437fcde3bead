"""Rule matching and automated action execution for email accounts."""

__version__ = "0.1.0"
