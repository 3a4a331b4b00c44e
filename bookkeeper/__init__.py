"""Offline-first record sync for the bookkeeping app."""

from .const import DOMAIN

__all__ = ["DOMAIN"]
