"""Ecotrack - HTTP gateway concerns (middleware, rate limiting)."""
