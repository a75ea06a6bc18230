"""Soil-analysis driven fertilizer and amendment dose recommendations."""

__version__ = "1.0.0"
