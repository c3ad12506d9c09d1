"""Draft Service - AI-assisted therapist replies.

A draft is generated for one therapist, edited, regenerated or undone
privately, and only reaches the patient when explicitly sent.
"""
from .workflow import DraftResult, DraftWorkflow, build_draft_instruction

__all__ = [
    "DraftResult",
    "DraftWorkflow",
    "build_draft_instruction",
]
