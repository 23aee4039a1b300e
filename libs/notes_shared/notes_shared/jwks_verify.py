from functools import lru_cache
from typing import Any, Dict, Sequence

import jwt
from jwt import PyJWKClient


@lru_cache(maxsize=8)
def _jwk_client(jwks_url: str, timeout: int) -> PyJWKClient:
    # PyJWKClient caches fetched keys; one client per URL keeps that cache warm.
    return PyJWKClient(jwks_url, cache_keys=True, lifespan=300, timeout=timeout)


def decode_with_jwks(
    token: str,
    jwks_url: str,
    audience: str | None = None,
    issuer: str | Sequence[str] | None = None,
    *,
    require: Sequence[str] = ("exp", "iat", "sub"),
    timeout: int = 5,
) -> Dict[str, Any]:
    """Verify an RS256 token against the signing key published at ``jwks_url``.

    Raises ``jwt.PyJWTError`` (including ``PyJWKClientError``) on any failure.
    """
    client = _jwk_client(jwks_url, timeout)
    signing_key = client.get_signing_key_from_jwt(token).key
    options = {"require": list(require), "verify_aud": audience is not None}
    payload = jwt.decode(token, signing_key, algorithms=["RS256"], audience=audience, options=options)
    if issuer is not None:
        allowed = [issuer] if isinstance(issuer, str) else list(issuer)
        if payload.get("iss") not in allowed:
            raise jwt.InvalidIssuerError("Invalid issuer")
    return payload
