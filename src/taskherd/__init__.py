"""taskherd: drive a coding agent through a task lifecycle."""

__version__ = "0.1.0"

__all__ = ["__version__"]
