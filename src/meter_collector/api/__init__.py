"""HTTP status and control API."""
