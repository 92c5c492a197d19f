"""Command-line interface for Recovery Companion."""
