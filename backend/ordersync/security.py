"""Access token vault for storefront connections.

WHAT:
    Encrypts Shopify offline access tokens before they are written to the
    tokens table and decrypts them when a sync job needs a client.

WHY:
    Tokens grant full read access to a merchant's orders and customers.
    Only ciphertext is stored, and log lines carry the shop, never the token.

USAGE:
    from ordersync.security import encrypt_access_token, decrypt_access_token

    stored = encrypt_access_token("shpat_...", shop_domain="demo.myshopify.com")
    token = decrypt_access_token(stored, shop_domain="demo.myshopify.com")
"""

import logging
import os

from cryptography.fernet import Fernet, InvalidToken

from ordersync.utils.env import load_env_file

logger = logging.getLogger(__name__)


def _load_cipher() -> Fernet:
    """Build the Fernet cipher from TOKEN_ENCRYPTION_KEY.

    Raises:
        RuntimeError: key missing or not a valid Fernet key
    """
    key = os.getenv("TOKEN_ENCRYPTION_KEY")
    if not key:
        load_env_file()
        key = os.getenv("TOKEN_ENCRYPTION_KEY")

    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is missing. Storefront tokens cannot be stored "
            "without it; set it in the environment or backend/.env."
        )

    try:
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not a valid Fernet key "
            "(expected 32 bytes, URL-safe base64). Create one with Fernet.generate_key()."
        ) from exc


# Fail at import so a misconfigured worker never starts consuming jobs
_cipher = _load_cipher()


def encrypt_access_token(access_token: str, *, shop_domain: str) -> str:
    """Return the ciphertext to persist for a shop's access token."""
    if not access_token:
        raise ValueError(f"Refusing to store an empty access token for {shop_domain}.")

    logger.info("[TOKEN_VAULT] Encrypting access token for %s", shop_domain)
    return _cipher.encrypt(access_token.encode("utf-8")).decode("ascii")


def decrypt_access_token(ciphertext: str, *, shop_domain: str) -> str:
    """Recover a shop's access token from its stored ciphertext.

    Raises:
        ValueError: nothing stored, or the key changed since it was written
    """
    if not ciphertext:
        raise ValueError(f"No stored access token for {shop_domain}.")

    try:
        return _cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_VAULT] Stored token for %s does not decrypt with the current key", shop_domain)
        raise ValueError(f"Stored access token for {shop_domain} is unreadable; reconnect the store.") from exc
