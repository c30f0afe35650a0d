"""
Configuration for the readiness pipeline.
"""

from .config_loader import ReadinessConfig

__all__ = ["ReadinessConfig"]
