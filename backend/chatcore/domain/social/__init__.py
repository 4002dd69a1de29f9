"""Friendship graph lookups."""
