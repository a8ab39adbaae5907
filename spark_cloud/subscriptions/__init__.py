"""Subscription registry."""
