"""Notification transports backed by external services."""
