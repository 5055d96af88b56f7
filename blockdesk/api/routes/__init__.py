"""Route modules exposed by the API package."""

from . import content, ping, tickets

__all__ = ["content", "ping", "tickets"]
