"""In-process event bus and persistent event log."""
