"""Custom integrations package."""
