"""Command-line tools for operating the checkout service."""
