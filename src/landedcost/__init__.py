"""Conversational tariff classification and landed-cost quoting."""

__all__ = ["__version__"]

__version__ = "0.3.0"
