"""Timestamps for node records and events (always UTC)."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now(timespec: str = "seconds") -> str:
    """e.g. 2024-05-01T12:00:00+00:00"""
    return utc_now().isoformat(timespec=timespec)
