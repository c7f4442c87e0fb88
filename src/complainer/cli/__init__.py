"""Command-line interface for complainer."""
