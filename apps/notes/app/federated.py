import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import jwt
from fastapi import Request

from notes_shared import normalize_email
from notes_shared.jwks_verify import decode_with_jwks

from .config import Settings


logger = logging.getLogger("notes.federated")


class FederatedTokenError(Exception):
    """The presented ID token is not acceptable."""


@dataclass
class FederatedIdentity:
    subject: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class GoogleTokenVerifier:
    def __init__(self, client_id: str, jwks_url: str, issuers: Sequence[str], timeout: int = 5):
        self.client_id = client_id
        self.jwks_url = jwks_url
        self.issuers = list(issuers)
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.client_id.strip())

    def verify(self, id_token: str) -> FederatedIdentity:
        try:
            claims = decode_with_jwks(
                id_token,
                self.jwks_url,
                audience=self.client_id,
                issuer=self.issuers,
                require=("exp", "iat", "sub", "email"),
                timeout=self.timeout,
            )
        except jwt.PyJWTError as exc:
            logger.info("Rejected Google ID token: %s", exc)
            raise FederatedTokenError("Invalid Google token") from exc
        # Absent is accepted; only an explicit false is refused.
        if claims.get("email_verified") in (False, "false"):
            raise FederatedTokenError("Google account email is not verified")
        return FederatedIdentity(
            subject=str(claims["sub"]),
            email=normalize_email(str(claims["email"])),
            name=claims.get("name"),
            picture=claims.get("picture"),
        )


def build_federated_verifier(s: Settings) -> GoogleTokenVerifier:
    return GoogleTokenVerifier(
        client_id=s.GOOGLE_CLIENT_ID,
        jwks_url=s.GOOGLE_JWKS_URL,
        issuers=s.GOOGLE_ISSUERS,
        timeout=s.GOOGLE_TIMEOUT_SECS,
    )


def get_federated_verifier(request: Request) -> GoogleTokenVerifier:
    return request.app.state.federated_verifier
