"""Command-line interface for the humgen pipeline."""
