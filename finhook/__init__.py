"""Webhook reception and connection-mode fallback for financial data sync."""

__version__ = "0.1.0"
