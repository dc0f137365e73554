"""Background workers for async processing."""
