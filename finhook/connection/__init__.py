"""Transport health probes and connection-mode selection."""
