"""Currency exchange rate service: providers, smart cache and conversion."""

__version__ = "0.1.0"
