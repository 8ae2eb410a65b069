"""HTTP API for the order fulfillment engine."""

__version__ = "1.0.0"
