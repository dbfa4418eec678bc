"""Yodeck content resolution and placement publish orchestration."""

__version__ = "0.1.0"
