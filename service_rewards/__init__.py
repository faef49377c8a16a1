"""Loyalty rewards policy service."""
