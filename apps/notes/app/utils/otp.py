from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from fastapi import Request
from notes_shared import (
    PROVIDER_PLACEHOLDER_CODE,
    Challenge,
    ChallengeBackend,
    ChallengeStore,
    IssueResult,
    IssueStatus,
    LocalChallengeBackend,
    MemoryChallengeStore,
    OTPConfig,
    OTPDeliveryError,
    OTPStoreError,
    RedisChallengeStore,
    VerifyResult,
    build_email_sender,
    check_challenge_state,
    mask_email,
    normalize_email,
    record_failure,
    record_success,
)
from notes_shared.otp import utcnow

from ..authsignal import AuthsignalClient, ProviderError
from ..config import Settings
from ..database import SessionLocal
from ..challenge_store import SqlChallengeStore

logger = logging.getLogger("notes.otp")

STATE_CHALLENGE_REQUIRED = "CHALLENGE_REQUIRED"
STATE_ALLOW = "ALLOW"
STATE_BLOCK = "BLOCK"


@dataclass
class ProviderChallengeBackend:
    """Delegates challenges to Authsignal, falling back to local issuance.

    Issuance never fails because of the provider. Verification of a delegated
    challenge is never answered locally: the real code was never known here.
    """

    client: AuthsignalClient
    local: LocalChallengeBackend
    action: str = "signIn"

    @property
    def store(self) -> ChallengeStore:
        return self.local.store

    @property
    def cfg(self) -> OTPConfig:
        return self.local.cfg

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.local.clock

    def issue(self, email: str) -> IssueResult:
        normalized = normalize_email(email)
        try:
            res = self.client.track(normalized, self.action, {"email": normalized})
        except ProviderError as exc:
            logger.warning("Authsignal track failed for %s, issuing locally: %s", mask_email(normalized), exc)
            return self.local.issue(normalized)

        state = res.state.upper()
        if state == STATE_CHALLENGE_REQUIRED and res.token:
            now = self.clock()
            challenge = Challenge(
                email=normalized,
                code=PROVIDER_PLACEHOLDER_CODE,
                provider_token=res.token,
                expires_at=now + timedelta(seconds=self.cfg.ttl_secs),
                attempts=0,
                created_at=now,
            )
            try:
                self.store.replace(challenge)
            except OTPStoreError as exc:
                raise OTPDeliveryError("Failed to send OTP") from exc
            return IssueResult(status=IssueStatus.CODE_PENDING, delivered=True, expires_at=challenge.expires_at)
        if state == STATE_ALLOW:
            return IssueResult(status=IssueStatus.PRE_VERIFIED, delivered=False)
        if state == STATE_BLOCK:
            logger.info("Authsignal blocked sign-in for %s", mask_email(normalized))
            return IssueResult(status=IssueStatus.BLOCKED, delivered=False)
        logger.warning("Authsignal returned state %r for %s, issuing locally", res.state, mask_email(normalized))
        return self.local.issue(normalized)

    def verify(self, email: str, code: str) -> VerifyResult:
        normalized = normalize_email(email)
        record = self.store.get(normalized)
        if record is None or not record.delegated:
            return self.local.verify(normalized, code)
        state = check_challenge_state(record, self.cfg, self.clock())
        if state is not None:
            return state
        try:
            res = self.client.validate_challenge(record.provider_token, user_id=normalized, code=(code or "").strip())
        except ProviderError as exc:
            logger.error("Authsignal validation failed for %s: %s", mask_email(normalized), exc)
            return VerifyResult.VERIFICATION_FAILED
        if res.is_valid:
            return record_success(self.store, record, self.cfg)
        return record_failure(self.store, record, self.cfg)


def build_challenge_store(s: Settings) -> ChallengeStore:
    mode = s.OTP_STORE.lower()
    if mode == "redis":
        return RedisChallengeStore(s.REDIS_URL)
    if mode == "memory":
        return MemoryChallengeStore()
    return SqlChallengeStore(SessionLocal)


def otp_config(s: Settings) -> OTPConfig:
    return OTPConfig(
        ttl_secs=s.OTP_TTL_SECS,
        max_attempts=s.OTP_MAX_ATTEMPTS,
        expose_dev_code=s.OTP_EXPOSE_DEV_CODE,
    )


def build_challenge_backend(
    s: Settings,
    store: ChallengeStore | None = None,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> ChallengeBackend:
    sender = build_email_sender(
        s.EMAIL_PROVIDER,
        url=s.EMAIL_HTTP_URL,
        auth_token=s.EMAIL_HTTP_AUTH_TOKEN or None,
        sender=s.EMAIL_SENDER or None,
        subject=s.EMAIL_SUBJECT,
        template=s.EMAIL_TEMPLATE,
        timeout_secs=s.EMAIL_TIMEOUT_SECS,
    )
    local = LocalChallengeBackend(
        store=store if store is not None else build_challenge_store(s),
        cfg=otp_config(s),
        sender=sender,
        clock=clock,
    )
    if not s.authsignal_enabled:
        return local
    client = AuthsignalClient(
        secret=s.AUTHSIGNAL_SECRET,
        base_url=s.AUTHSIGNAL_BASE_URL,
        timeout_secs=s.AUTHSIGNAL_TIMEOUT_SECS,
    )
    logger.info("Challenge delegation enabled via %s", s.AUTHSIGNAL_BASE_URL)
    return ProviderChallengeBackend(client=client, local=local, action=s.AUTHSIGNAL_ACTION)


def get_challenge_backend(request: Request) -> ChallengeBackend:
    return request.app.state.challenge_backend
