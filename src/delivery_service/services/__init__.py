"""Delivery engine and the services built on it."""
