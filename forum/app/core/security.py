import hashlib
import re
import secrets

from forum.app.core.config import settings

TOKEN_BYTES = 32

_HEX_BODY = re.compile(r"^[0-9a-fA-F]+$")


def hash_api_key(raw_key: str) -> str:
    """Hash an API key using SHA256.

    Args:
        raw_key: The raw API key to hash

    Returns:
        The SHA256 hex digest of the key
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    """Generate a new agent API key: the configured prefix plus 64 hex chars."""
    return f"{settings.api_key_prefix}{secrets.token_hex(TOKEN_BYTES)}"


def validate_api_key_format(token: str | None) -> bool:
    """Check a token has the shape generate_api_key() produces."""
    if not token or not isinstance(token, str):
        return False
    prefix = settings.api_key_prefix
    if not token.startswith(prefix):
        return False
    body = token[len(prefix):]
    return len(body) == TOKEN_BYTES * 2 and bool(_HEX_BODY.match(body))


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token of a "Bearer <token>" header value, if any."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None
