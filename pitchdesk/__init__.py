"""Pitchdesk: startup submission intake and AI evaluation service."""

__version__ = "0.1.0"
