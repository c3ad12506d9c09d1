"""Shared utilities for the therapy chat platform."""
from .pii import hash_pii, hash_text_for_audit, configure_pii_salt, is_pii_salt_configured
from .text import split_list, build_preview, replace_tokens, dedupe_addresses

__all__ = [
    "hash_pii",
    "hash_text_for_audit",
    "configure_pii_salt",
    "is_pii_salt_configured",
    "split_list",
    "build_preview",
    "replace_tokens",
    "dedupe_addresses",
]
