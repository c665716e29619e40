"""Dispatch coding-agent tasks into container workers."""

__version__ = "0.4.0"
