"""Ledger deployment entry point."""
