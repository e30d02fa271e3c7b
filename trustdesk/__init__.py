"""TrustDesk: moderation escalation and account restriction service."""

__version__ = "0.1.0"
