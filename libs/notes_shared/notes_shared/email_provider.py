from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .email_utils import mask_email, normalize_email

logger = logging.getLogger("notes_shared.email")


class EmailBackend(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class LogBackend:
    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("OTP log backend send to=%s subject=%r body=%s", mask_email(to), subject, _mask_code_in_message(body))


@dataclass
class HttpBackend:
    """JSON transactional-email API (Postmark/Resend style payload)."""

    url: str
    auth_token: Optional[str] = None
    sender: Optional[str] = None
    timeout_secs: float = 5.0

    def send(self, to: str, subject: str, body: str) -> None:
        if not (self.url or "").strip():
            raise RuntimeError("Email URL must be configured for HTTP provider")
        payload = {"to": normalize_email(to), "subject": subject, "text": body}
        if self.sender:
            payload["from"] = self.sender
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        _send_with_retry(
            lambda: httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout_secs),
            backend_name="http",
        )


@dataclass
class EmailSender:
    backend: EmailBackend
    subject: str = "Your verification code"
    template: str = "Your verification code is {code}. It expires in 10 minutes."

    def send_code(self, email: str, code: str) -> None:
        try:
            message = self.template.format(code=code)
        except (KeyError, IndexError, ValueError):
            message = f"Your verification code is {code}"
        self.backend.send(normalize_email(email), self.subject, message)
        logger.debug("OTP dispatched via %s to=%s code=%s", type(self.backend).__name__, mask_email(email), _mask_code(code))

    def __repr__(self) -> str:  # pragma: no cover - helper for logging
        return f"EmailSender({type(self.backend).__name__})"


def build_email_sender(
    provider: str,
    *,
    url: str = "",
    auth_token: Optional[str] = None,
    sender: Optional[str] = None,
    subject: Optional[str] = None,
    template: Optional[str] = None,
    timeout_secs: float = 5.0,
) -> EmailSender:
    mode = (provider or "log").lower()
    if mode == "http":
        backend: EmailBackend = HttpBackend(url=url, auth_token=auth_token or None, sender=sender or None, timeout_secs=timeout_secs)
    elif mode == "log":
        backend = LogBackend()
    else:
        raise RuntimeError(f"Unsupported EMAIL_PROVIDER '{mode}'")
    out = EmailSender(backend)
    if subject:
        out.subject = subject
    if template:
        out.template = template
    return out


def _mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


def _mask_code_in_message(message: str) -> str:
    if not message:
        return ""
    return re.sub(r"(\d{4,})", lambda m: _mask_code(m.group(0)), message)


def _send_with_retry(callable_fn, backend_name: str) -> None:
    max_attempts = 3
    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            res = callable_fn()
            try:
                res.raise_for_status()
                return
            finally:
                res.close()
        except httpx.HTTPError as exc:
            if attempt == max_attempts:
                raise
            logger.warning("%s email attempt %s failed: %s", backend_name, attempt, exc)
            time.sleep(delay)
            delay *= 2
