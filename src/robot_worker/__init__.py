"""External-task worker that drives desktop-automation robots."""

__version__ = "0.3.0"
