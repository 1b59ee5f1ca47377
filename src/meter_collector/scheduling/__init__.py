"""Recurring triggers and the collection cycle scheduler."""
