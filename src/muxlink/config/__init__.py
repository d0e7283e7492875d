"""Configuration management for muxlink.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides with the ``MUXLINK_`` prefix.
"""

from muxlink.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
