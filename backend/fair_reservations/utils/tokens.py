import hashlib
import secrets

CONFIRMATION_TOKEN_BYTES = 32


def generate_confirmation_token() -> str:
    """Random bearer token for the confirmation link; 64 hex characters."""
    return secrets.token_hex(CONFIRMATION_TOKEN_BYTES)


def token_digest(token: str) -> str:
    """SHA-256 of a token, kept after confirmation so repeat clicks stay idempotent."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
