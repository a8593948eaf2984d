"""Outbound event delivery service for feedbacks.dev."""
