"""PII handling for logs: patient identifiers and message bodies never
appear in log records in clear text.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from PII_HASH_SALT (or Secrets Manager) at service startup
_PII_SALT: Optional[str] = None


def configure_pii_salt(salt: str) -> None:
    """Configure the PII hashing salt.

    Must be called during application startup before any hashing.

    Raises:
        ValueError: If salt is empty or shorter than 32 characters
    """
    global _PII_SALT
    if not salt or len(salt) < 32:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": 32}
        )
        raise ValueError("PII salt must be at least 32 characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def is_pii_salt_configured() -> bool:
    return _PII_SALT is not None


def hash_pii(value: str) -> str:
    """Salted SHA-256 of a user identifier or email, safe to log.

    Raises:
        RuntimeError: If the salt has not been configured
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    return hashlib.sha256(f"{_PII_SALT}{value}".encode()).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Unsalted fingerprint of message text for log correlation."""
    return hashlib.sha256(text.encode()).hexdigest()
