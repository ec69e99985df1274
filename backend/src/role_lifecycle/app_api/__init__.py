"""HTTP API for role grant administration."""
