"""Command-line interface for linguasync."""
