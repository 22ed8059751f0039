"""Shared infrastructure: database pool and redis clients."""
