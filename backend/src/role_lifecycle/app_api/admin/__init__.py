"""Admin-only API routes."""
