"""HTTP API for checkout and payment reconciliation."""
