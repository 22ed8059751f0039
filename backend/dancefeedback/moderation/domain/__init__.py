"""Moderation domain: models, classifier, ledger and verdict logic."""
