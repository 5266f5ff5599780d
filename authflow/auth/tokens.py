"""
ID token and access token verification.

This module handles:
- Structural parsing of compact JWS tokens
- Signing key resolution through the JWKS cache (with one retry on key rotation)
- Signature verification with python-jose
- Validation of the registered claims (exp, iat, iss, aud, nonce)
- Opaque access token verification through introspection
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

from jose import jwk
from jose.exceptions import JOSEError
from pydantic import ValidationError

from authflow.auth.crypto import base64url_decode
from authflow.auth.jwks import JwksCache
from authflow.auth.storage import Clock
from authflow.config import Settings
from authflow.errors import InvalidTokenError, TokenErrorReason
from authflow.models import IntrospectionResult, VerifiedClaims

logger = logging.getLogger(__name__)


ALLOWED_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}
)


# =============================================================================
# Structural Parsing
# =============================================================================

def _decode_segment(segment: str) -> Dict[str, Any]:
    try:
        data = json.loads(base64url_decode(segment))
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidTokenError(TokenErrorReason.MALFORMED) from e
    if not isinstance(data, dict):
        raise InvalidTokenError(TokenErrorReason.MALFORMED)
    return data


def split_token(token: str) -> Tuple[Dict[str, Any], Dict[str, Any], str, str]:
    """
    Split a compact JWS into its decoded parts.

    Returns:
        (header, payload, signing_input, signature_segment)

    Raises:
        InvalidTokenError: ``malformed`` if the token does not have three
            segments or a segment is not base64url JSON
    """
    if not isinstance(token, str):
        raise InvalidTokenError(TokenErrorReason.MALFORMED)

    parts = token.split(".")
    if len(parts) != 3 or not all(parts[:2]):
        raise InvalidTokenError(TokenErrorReason.MALFORMED)

    header_segment, payload_segment, signature_segment = parts
    header = _decode_segment(header_segment)
    payload = _decode_segment(payload_segment)

    return header, payload, f"{header_segment}.{payload_segment}", signature_segment


def parse_jwt(token: str) -> Dict[str, Dict[str, Any]]:
    """
    Decode a JWT without verifying it (for inspection and debugging only).

    Returns:
        ``{"header": {...}, "payload": {...}}``

    Raises:
        InvalidTokenError: ``malformed`` if the token cannot be decoded
    """
    header, payload, _, _ = split_token(token)
    return {"header": header, "payload": payload}


def is_token_expired(token: str, now: Optional[float] = None) -> bool:
    """
    Check the ``exp`` claim of an unverified token.

    Malformed tokens are considered expired. Tokens without ``exp`` are not.
    """
    try:
        payload = parse_jwt(token)["payload"]
    except InvalidTokenError:
        return True

    exp = payload.get("exp")
    if not isinstance(exp, (int, float)):
        return False

    return exp < (time.time() if now is None else now)


# =============================================================================
# Token Verifier
# =============================================================================

class TokenVerifier:
    """
    Verifies provider issued tokens.

    Verification is all-or-nothing: either every check passes and a
    ``VerifiedClaims`` is returned, or ``InvalidTokenError`` is raised with
    the reason of the first failing check.
    """

    def __init__(
        self,
        settings: Settings,
        jwks_cache: JwksCache,
        *,
        introspector=None,
        clock: Clock = time.time,
    ):
        self._settings = settings
        self._jwks = jwks_cache
        self._introspector = introspector
        self._clock = clock

    async def verify_id_token(
        self,
        token: str,
        expected_nonce: Optional[str] = None,
    ) -> VerifiedClaims:
        """
        Verify an ID token's signature and claims.

        Args:
            token: Compact JWS ID token
            expected_nonce: Nonce stored when the authorization request was built

        Returns:
            Verified claims, including every non-registered claim verbatim

        Raises:
            InvalidTokenError: With the reason of the failing check
            KeySetFetchError: If the provider keys cannot be fetched
        """
        try:
            header, payload, signing_input, signature_segment = split_token(token)

            kid = header.get("kid")
            if not isinstance(kid, str) or not kid:
                raise InvalidTokenError(
                    TokenErrorReason.MALFORMED, "Token header missing 'kid' (Key ID)"
                )

            key = await self._resolve_key(kid)
            self._verify_signature(header, key, signing_input, signature_segment)
            self._validate_claims(payload, expected_nonce)

            try:
                claims = VerifiedClaims.model_validate(payload)
            except ValidationError as e:
                raise InvalidTokenError(
                    TokenErrorReason.MALFORMED, "Token claims have unexpected types"
                ) from e

        except InvalidTokenError as e:
            logger.warning(
                "ID token validation failed",
                extra={"reason": e.reason.value, "error": e.message},
            )
            raise

        logger.info(
            "ID token validated successfully",
            extra={"sub": claims.sub, "iss": claims.iss},
        )
        return claims

    async def verify_access_token(self, token: str) -> IntrospectionResult:
        """
        Verify an opaque access token by introspection.

        Raises:
            InvalidTokenError: ``inactive`` if introspection fails or the
                provider reports the token as inactive
        """
        if self._introspector is None:
            raise InvalidTokenError(
                TokenErrorReason.INACTIVE, "Token introspection is not available"
            )

        result = await self._introspector.introspect(token)
        if result is None or not result.active:
            logger.warning("Access token is not active")
            raise InvalidTokenError(TokenErrorReason.INACTIVE)

        return result

    # -------------------------------------------------------------------------
    # Verification steps
    # -------------------------------------------------------------------------

    async def _resolve_key(self, kid: str) -> Dict[str, Any]:
        key = await self._jwks.get_key(kid)
        if key is None:
            # Keys may have rotated since the cache was filled
            self._jwks.invalidate()
            key = await self._jwks.get_key(kid)

        if key is None:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_SIGNATURE,
                "Unable to find matching signing key in JWKS",
                context={"kid": kid},
            )
        return key

    def _verify_signature(
        self,
        header: Dict[str, Any],
        key: Dict[str, Any],
        signing_input: str,
        signature_segment: str,
    ) -> None:
        algorithm = header.get("alg") or key.get("alg")
        if algorithm not in ALLOWED_ALGORITHMS:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_SIGNATURE,
                f"Unsupported signing algorithm: {algorithm}",
            )

        if key.get("alg") and key["alg"] != algorithm:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_SIGNATURE,
                "Token algorithm does not match the signing key",
            )

        try:
            signature = base64url_decode(signature_segment)
        except ValueError as e:
            raise InvalidTokenError(TokenErrorReason.INVALID_SIGNATURE) from e

        try:
            public_key = jwk.construct(key, algorithm=algorithm)
            valid = public_key.verify(signing_input.encode("ascii"), signature)
        except (JOSEError, ValueError, TypeError) as e:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_SIGNATURE,
                f"Failed to verify signature: {e}",
            ) from e

        if not valid:
            raise InvalidTokenError(TokenErrorReason.INVALID_SIGNATURE)

    def _validate_claims(
        self,
        payload: Dict[str, Any],
        expected_nonce: Optional[str],
    ) -> None:
        now = self._clock()

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise InvalidTokenError(TokenErrorReason.MALFORMED, "Token has no valid 'exp' claim")
        if exp < now:
            raise InvalidTokenError(TokenErrorReason.EXPIRED)

        iat = payload.get("iat")
        if iat is not None:
            if not isinstance(iat, (int, float)) or isinstance(iat, bool):
                raise InvalidTokenError(TokenErrorReason.MALFORMED, "Token has an invalid 'iat' claim")
            if now - iat > self._settings.MAX_TOKEN_AGE:
                raise InvalidTokenError(
                    TokenErrorReason.EXPIRED, "Token was issued too long ago"
                )

        issuer = self._settings.OIDC_ISSUER
        if issuer and payload.get("iss") != issuer:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_ISSUER,
                context={"expected": issuer, "actual": payload.get("iss")},
            )

        client_id = self._settings.OIDC_CLIENT_ID
        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud]
        if client_id not in audiences:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_AUDIENCE,
                context={"expected": client_id},
            )

        if expected_nonce is not None and payload.get("nonce") != expected_nonce:
            raise InvalidTokenError(
                TokenErrorReason.INVALID_NONCE,
                context={"has_nonce": "nonce" in payload},
            )
