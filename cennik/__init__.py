"""Furniture price-list catalog: Flask app, JSON API and catalog stores."""

__version__ = "0.1.0"
