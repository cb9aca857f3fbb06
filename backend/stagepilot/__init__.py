"""StagePilot - chat-driven, approval-gated delivery pipeline backend."""

__version__ = "0.1.0"
