"""
JWT validation for bearer tokens.

Two signing modes are supported:
- HS256 with a shared project secret (AUTH_JWT_SECRET)
- RS256 with public keys published at AUTH_JWKS_URL
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Dict, Any

import jwt
from jwt import PyJWK
from django.conf import settings

from .jwks import get_jwks_cache

logger = logging.getLogger(__name__)


class JWTValidationError(Exception):
    """Raised when JWT validation fails."""
    pass


@dataclass
class TokenClaims:
    """Validated token claims."""
    sub: str  # Subject (user ID)
    email: Optional[str]
    role: Optional[str]
    raw_claims: Dict[str, Any]


def _get_signing_key(token: str) -> tuple:
    """
    Resolve the verification key and allowed algorithms for a token.

    Returns:
        (key, algorithms) tuple
    """
    unverified_header = jwt.get_unverified_header(token)
    alg = unverified_header.get('alg')

    if alg == 'HS256':
        secret = getattr(settings, 'AUTH_JWT_SECRET', '')
        if not secret:
            raise JWTValidationError("HS256 tokens are not accepted (no shared secret configured)")
        return secret, ['HS256']

    kid = unverified_header.get('kid')
    if not kid:
        raise JWTValidationError("Token header missing 'kid'")

    jwk_data = get_jwks_cache().get_key(kid)
    if not jwk_data:
        raise JWTValidationError(f"Unknown key ID: {kid}")

    return PyJWK.from_dict(jwk_data).key, ['RS256']


def validate_token(token: str) -> TokenClaims:
    """
    Validate a bearer JWT.

    Performs the following validations:
    1. Resolve the signing key (shared secret or JWKS by kid)
    2. Verify signature and expiry
    3. Verify issuer against the allowed list (if configured)
    4. Verify audience (if configured)
    5. Require a subject claim

    Args:
        token: The JWT token string (without 'Bearer ' prefix)

    Returns:
        TokenClaims with validated claims

    Raises:
        JWTValidationError: If validation fails
    """
    try:
        key, algorithms = _get_signing_key(token)

        audience = getattr(settings, 'AUTH_AUDIENCE', '') or None
        valid_issuers: List[str] = getattr(settings, 'AUTH_VALID_ISSUERS', [])

        claims = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=audience,
            options={
                'verify_signature': True,
                'verify_exp': True,
                'verify_aud': audience is not None,
                'require': ['exp', 'sub'],
            }
        )

        token_issuer = claims.get('iss', '')
        if valid_issuers and token_issuer not in valid_issuers:
            logger.warning(f"Invalid issuer: {token_issuer}, expected one of: {valid_issuers}")
            raise JWTValidationError("Invalid token issuer")

        sub = claims.get('sub', '')
        if not sub:
            raise JWTValidationError("Token missing subject")

        return TokenClaims(
            sub=sub,
            email=claims.get('email'),
            role=claims.get('role'),
            raw_claims=claims
        )

    except JWTValidationError:
        raise
    except jwt.ExpiredSignatureError:
        raise JWTValidationError("Token has expired")
    except jwt.InvalidAudienceError:
        raise JWTValidationError("Invalid token audience")
    except jwt.InvalidTokenError as e:
        raise JWTValidationError(f"Invalid token: {e}")
    except Exception as e:
        logger.exception("Unexpected error during token validation")
        raise JWTValidationError(f"Token validation failed: {e}")
