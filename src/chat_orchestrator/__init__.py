"""Permissioned task orchestration for chat-driven tool execution."""

__version__ = "0.1.0"
