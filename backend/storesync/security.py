"""Security utilities for tenant credentials and webhook signatures.

WHAT:
    Symmetric encryption for tenant API credentials and HMAC helpers for
    verifying storefront webhook payloads.

WHY:
    - Credential encryption keeps bearer tokens out of plaintext storage.
    - Webhook signatures are the only proof that a push notification came
      from the platform; comparison must be constant-time.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
    - storesync/services/webhook_admission.py (signature consumer)
    - storesync/services/tenant_service.py (credential consumer)
"""

import base64
import hashlib
import hmac
import logging
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from storesync.utils.env import load_env_file
    load_env_file()
    TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env."
    )

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a tenant credential before persisting.

    Args:
        plaintext: Raw secret to encrypt (storefront access token).
        context:   Friendly label for logs (tenant domain).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a tenant credential when building API requests.

    Args:
        ciphertext: Encrypted token retrieved from DB.
        context:    Friendly label for logs (tenant domain).

    Returns:
        Plaintext secret string.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc


def compute_webhook_signature(body: bytes, secret: str) -> str:
    """Return the base64 HMAC-SHA256 digest of a raw webhook body."""
    digest = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Verify a webhook signature header against the raw body.

    WHAT:
        Recomputes the HMAC over the exact bytes received and compares it to
        the header value in constant time.
    WHY:
        The body must not be re-serialized before verification; any JSON
        round-trip changes the bytes and breaks the digest.

    Returns:
        False when the secret or header is missing, or the digest differs.
    """
    if not secret:
        logger.warning("[WEBHOOK] Shared secret not configured, rejecting delivery")
        return False

    if not signature:
        return False

    expected = compute_webhook_signature(body, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
