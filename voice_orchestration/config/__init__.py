"""
Configuration for the voice orchestration service.

Settings are environment-driven (pydantic-settings) and immutable once built.
"""

from .settings import Settings, get_settings

__all__ = ['Settings', 'get_settings']
