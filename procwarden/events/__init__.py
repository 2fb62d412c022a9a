"""Lifecycle event bus."""
