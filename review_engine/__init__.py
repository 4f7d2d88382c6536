"""Document-review and chat-over-documents execution engine."""

__version__ = "0.1.0"
