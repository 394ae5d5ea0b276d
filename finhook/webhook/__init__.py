"""Webhook ingestion: security, deduplication, rate limiting, routing and transports."""
