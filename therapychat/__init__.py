"""Therapy chat orchestration: patient, AI assistant and therapists in one thread."""

__version__ = "0.1.0"
