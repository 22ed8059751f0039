"""Moderation infrastructure adapters."""
