"""Command-line interface for the cipher ledger."""
