"""Command-line interface for stackwright."""
