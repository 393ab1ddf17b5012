"""Web components for ip-potato."""

from .api import MediaType, create_app, negotiate_media_type

__all__ = ["MediaType", "create_app", "negotiate_media_type"]
