"""Shared modules used by the admin API and the scheduler entry point."""
