"""Web dashboard and REST API."""
