"""Gmail API access."""
