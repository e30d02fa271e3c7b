"""Route modules exposed by the API package."""

from . import access, metrics, moderation, notifications, ping, tickets

__all__ = ["access", "metrics", "moderation", "notifications", "ping", "tickets"]
