"""Shared modules for the filter stream mock."""

from .models import FilterSpec, ServerConfig, Tweet

__all__ = ["FilterSpec", "ServerConfig", "Tweet"]
