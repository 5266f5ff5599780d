"""
Cryptographic primitives used by the PKCE and token verification code.

Random strings, SHA-256 digests and base64url helpers. Pure functions; the
random source is a parameter so tests can pin it.
"""

import binascii
import hashlib
import secrets
from typing import Callable, Union

from jose.utils import base64url_decode as _jose_b64decode
from jose.utils import base64url_encode as _jose_b64encode


RandomSource = Callable[[int], bytes]

# 32 bytes = 256 bits of entropy for state and nonce
STATE_BYTES = 32
# 64 bytes hex encoded = 128 character code verifier
VERIFIER_BYTES = 64


def random_bytes(length: int, source: RandomSource = secrets.token_bytes) -> bytes:
    return source(length)


def random_string(length: int, source: RandomSource = secrets.token_bytes) -> str:
    """
    Hex string built from ``length`` random bytes (``2 * length`` chars).

    Hex digits are a subset of the PKCE unreserved character set, so the
    output is valid as state, nonce or code verifier.
    """
    return random_bytes(length, source).hex()


def sha256(data: Union[str, bytes]) -> bytes:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).digest()


def base64url_encode(data: Union[str, bytes]) -> str:
    """Base64url encode without padding."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return _jose_b64encode(data).decode("ascii")


def base64url_decode(data: Union[str, bytes]) -> bytes:
    """
    Decode base64url with or without padding.

    Raises:
        ValueError: If the input is not valid base64url
    """
    if isinstance(data, str):
        try:
            data = data.encode("ascii")
        except UnicodeEncodeError as e:
            raise ValueError("Invalid base64url input") from e
    try:
        return _jose_b64decode(data)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64url input: {e}") from e


def generate_code_verifier(source: RandomSource = secrets.token_bytes) -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        128 character hex string (512 bits of entropy)
    """
    return random_string(VERIFIER_BYTES, source)


def code_challenge_s256(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, no padding
    """
    return base64url_encode(sha256(verifier))
