"""Clickable task checkboxes for a live markdown preview."""

__version__ = "0.1.0"
