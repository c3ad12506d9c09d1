"""Shared models, utilities and persistence for therapy chat services."""
