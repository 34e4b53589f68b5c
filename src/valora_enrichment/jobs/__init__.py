"""Scheduled jobs."""

from .freshness_refresh import refresh_stale_categories, stale_categories

__all__ = ["refresh_stale_categories", "stale_categories"]
