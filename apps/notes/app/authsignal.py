from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx


logger = logging.getLogger("notes.provider")


class ProviderError(Exception):
    """The remote challenge provider could not be reached or answered garbage."""


@dataclass
class TrackResponse:
    state: str
    token: Optional[str] = None


@dataclass
class ValidateResponse:
    is_valid: bool
    message: Optional[str] = None


@dataclass
class AuthsignalClient:
    """Minimal Authsignal server API client.

    Authenticates with HTTP basic auth (tenant secret as username) and applies
    one bounded timeout to every call.
    """

    secret: str
    base_url: str = "https://api.authsignal.com/v1"
    timeout_secs: float = 5.0
    transport: Optional[httpx.BaseTransport] = None

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url.rstrip("/"),
            auth=(self.secret, ""),
            timeout=self.timeout_secs,
            transport=self.transport,
        )

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with self._client() as client:
                res = client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Authsignal request to {path} failed: {exc}") from exc
        if res.status_code >= 400:
            raise ProviderError(f"Authsignal {path} returned {res.status_code}: {res.text[:200]}")
        try:
            data = res.json()
        except ValueError as exc:
            raise ProviderError(f"Authsignal {path} returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ProviderError(f"Authsignal {path} returned an unexpected body")
        return data

    def track(self, user_id: str, action: str, attributes: Optional[Dict[str, Any]] = None) -> TrackResponse:
        path = f"/users/{quote(user_id, safe='')}/actions/{quote(action, safe='')}"
        data = self._post(path, attributes or {})
        return TrackResponse(
            state=str(data.get("state") or ""),
            token=data.get("token"),
        )

    def validate_challenge(self, token: str, *, user_id: Optional[str] = None, code: Optional[str] = None) -> ValidateResponse:
        payload: Dict[str, Any] = {"token": token}
        if user_id:
            payload["userId"] = user_id
        if code:
            payload["verificationCode"] = code
        data = self._post("/validate", payload)
        if "isValid" not in data:
            raise ProviderError("Authsignal /validate response missing isValid")
        return ValidateResponse(is_valid=bool(data.get("isValid")), message=data.get("state") or data.get("message"))
