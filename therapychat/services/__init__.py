"""Therapy chat services."""
