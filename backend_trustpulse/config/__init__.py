"""
Configuration management for the TrustPulse pipeline.

Loads settings from environment variables (and an optional .env file) and
exposes them as a single Settings object that builds per-component configs.
"""

from backend_trustpulse.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["Settings", "get_settings"]
