"""Ledger and content store backends."""
