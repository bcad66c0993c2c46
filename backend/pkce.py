"""
PKCE (RFC 7636) helpers for the authorization code flow. S256 only.
"""
import base64
import hashlib
import secrets

VERIFIER_BYTES = 32


def base64url_encode(data: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """
    Generate a cryptographically random code verifier.

    32 random bytes encode to 43 characters, the RFC 7636 minimum length.
    The verifier stays server-side and is only sent with the token request.
    """
    if num_bytes < VERIFIER_BYTES:
        raise ValueError(f"Code verifier needs at least {VERIFIER_BYTES} bytes of entropy")
    return base64url_encode(secrets.token_bytes(num_bytes))


def derive_code_challenge(verifier: str) -> str:
    """Return BASE64URL(SHA256(verifier)), sent to the authorization endpoint."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64url_encode(digest)


def generate_state() -> str:
    """Opaque anti-forgery value echoed back on the callback."""
    return secrets.token_urlsafe(32)


def build_pkce() -> tuple[str, str]:
    """Return a fresh (code_verifier, code_challenge) pair."""
    verifier = generate_code_verifier()
    return verifier, derive_code_challenge(verifier)
