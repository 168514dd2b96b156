"""Helpers shared by the CLI and the catalog: validation and output formatting."""
