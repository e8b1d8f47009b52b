"""
ModelSwap Security Utilities

Encryption for shop access tokens, JWT handling for the admin API,
webhook signature verification and cron-trigger authorization.
"""

import base64
import hashlib
import hmac
from datetime import datetime, timedelta

from cryptography.fernet import Fernet
from jose import JWTError, jwt

from core.config import get_settings

settings = get_settings()

# Fernet encryption for shop access tokens
# IMPORTANT: Dev key must be deterministic so all processes share the same key.
if settings.encryption_key == "dev-encryption-key-change-in-production":
    _dev_key = base64.urlsafe_b64encode(hashlib.sha256(b"modelswap-dev-key-not-for-production").digest())
    _fernet = Fernet(_dev_key)
else:
    _fernet = Fernet(settings.encryption_key.encode())


def encrypt(plaintext: str) -> str:
    """Encrypt sensitive data (shop access tokens, etc)."""
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    """Decrypt sensitive data."""
    return _fernet.decrypt(ciphertext.encode()).decode()


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """
    Create an admin API access token.

    The service does not log merchants in itself; the embedded admin app mints
    tokens with this helper and the shared ``jwt_secret``. Claims must carry
    ``shop`` (the tenant every admin route is scoped to) and usually ``sub``.
    """
    runtime_settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=24))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, runtime_settings.jwt_secret, algorithm=runtime_settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate an admin access token. Returns None when invalid."""
    runtime_settings = get_settings()
    try:
        return jwt.decode(
            token,
            runtime_settings.jwt_secret,
            algorithms=[runtime_settings.jwt_algorithm],
        )
    except JWTError:
        return None


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Verify a Shopify-style webhook HMAC (base64-encoded SHA-256 digest)."""
    if not secret or not signature:
        return False
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(signature, expected)


def extract_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def is_authorized_cron_request(headers) -> bool:
    """
    Cron ingress authorization.

    With a cron secret configured the Bearer token is required; the hosting
    platform's native cron header (value "1") is only honoured when no secret
    is set, since any caller can send that header.
    """
    runtime_settings = get_settings()
    if not runtime_settings.cron_secret:
        return headers.get(runtime_settings.cron_platform_header) == "1"
    token = extract_bearer_token(headers.get("authorization"))
    if token is None:
        return False
    return hmac.compare_digest(token, runtime_settings.cron_secret)
