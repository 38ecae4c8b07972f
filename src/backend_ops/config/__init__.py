"""
Configuration management for backend-ops.

Contains the Pydantic settings object shared by the release and migration
workflows.
"""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
