"""Authenticated payment-order lifecycle for assessment credit purchases."""

__version__ = "1.0.0"
