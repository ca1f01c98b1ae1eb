"""Clawless - chat platforms in front of an ACP coding agent."""

__version__ = "0.1.0"
