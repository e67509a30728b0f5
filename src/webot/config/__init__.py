"""config/ — settings loading and remote configuration for the Webot client."""
