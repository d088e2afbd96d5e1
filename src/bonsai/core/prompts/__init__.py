"""Markdown prompt templates for worker task types."""
