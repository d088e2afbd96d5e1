"""Bonsai heartbeat: periodic dispatch of human-gated work items to coding agents."""

__version__ = "0.1.0"
