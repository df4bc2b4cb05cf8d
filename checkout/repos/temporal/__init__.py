"""Temporal activity wrappers and workflow proxies."""
