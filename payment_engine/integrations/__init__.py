"""Gateway adapters, canonical mapping, webhooks and the order service client."""
