"""Command-line interface for tracksync maintenance tasks."""
