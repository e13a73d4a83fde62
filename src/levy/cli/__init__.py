"""Command line interface for levy."""
