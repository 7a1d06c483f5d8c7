"""Moderation: decision model, built-in safety list and the coordinator."""
