"""Shared helpers used across the relay."""
