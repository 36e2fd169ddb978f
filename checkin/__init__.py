"""Ticket check-in scanner: camera decode, validation, operator confirmation."""

__version__ = "0.3.0"
