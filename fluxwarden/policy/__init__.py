"""Disallowed-name policy."""
