"""Sandboxed code execution relay with streaming run events."""

__version__ = "0.1.0"
