"""Web layer: the funnel session HTTP API."""
