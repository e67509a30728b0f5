"""observability/ — structured logging for the Webot client."""
