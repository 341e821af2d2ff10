"""drydock — container execution runtime for security-automation workflows."""

__version__ = "0.1.0"
