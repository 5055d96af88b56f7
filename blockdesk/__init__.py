"""Ticket lifecycle and audit reconciliation service."""

__version__ = "0.1.0"
