from __future__ import annotations

import json
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass, field, replace as dc_replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

import redis

from .email_provider import EmailSender
from .email_utils import mask_email, normalize_email


logger = logging.getLogger("notes_shared.otp")

# Stored in place of the code when a remote provider owns the passcode.
PROVIDER_PLACEHOLDER_CODE = "------"


class OTPError(Exception):
    """Base exception for OTP operations."""


class OTPStoreError(OTPError):
    """The challenge store could not complete an operation."""


class OTPDeliveryError(OTPError):
    """A challenge could not be issued (persisted)."""


class VerifyResult(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_CODE = "invalid_code"
    VERIFICATION_FAILED = "verification_failed"


class IssueStatus(str, Enum):
    CODE_PENDING = "code_pending"
    PRE_VERIFIED = "pre_verified"
    BLOCKED = "blocked"


@dataclass
class OTPConfig:
    ttl_secs: int = 600
    max_attempts: int = 3
    code_length: int = 6
    # Echo the code back to the caller; only safe outside production.
    expose_dev_code: bool = False


def generate_otp_code(length: int = 6) -> str:
    return f"{secrets.randbelow(10**length):0{length}d}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by some DB drivers) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Challenge:
    email: str
    code: str
    expires_at: datetime
    attempts: int = 0
    provider_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    challenge_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) > as_utc(self.expires_at)

    @property
    def delegated(self) -> bool:
        return bool(self.provider_token)


@dataclass
class IssueResult:
    status: IssueStatus
    delivered: bool
    expires_at: Optional[datetime] = None
    code: Optional[str] = None

    def __repr__(self) -> str:  # never leak the code into logs
        return f"IssueResult(status={self.status.value}, delivered={self.delivered}, expires_at={self.expires_at})"


class ChallengeStore(Protocol):
    def get(self, email: str) -> Optional[Challenge]:
        ...

    def replace(self, challenge: Challenge) -> None:
        ...

    def register_failure(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        ...

    def consume(self, email: str, challenge_id: str, max_attempts: int) -> bool:
        ...

    def purge_expired(self, now: datetime) -> int:
        ...


class ChallengeBackend(Protocol):
    def issue(self, email: str) -> IssueResult:
        ...

    def verify(self, email: str, code: str) -> VerifyResult:
        ...


class MemoryChallengeStore:
    """Process-local store. One lock serialises every per-identity update."""

    def __init__(self) -> None:
        self._items: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    def get(self, email: str) -> Optional[Challenge]:
        with self._lock:
            item = self._items.get(normalize_email(email))
            return dc_replace(item) if item else None

    def replace(self, challenge: Challenge) -> None:
        with self._lock:
            self._items[normalize_email(challenge.email)] = dc_replace(challenge)

    def register_failure(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        with self._lock:
            item = self._items.get(normalize_email(email))
            if item is None or item.challenge_id != challenge_id or item.attempts >= max_attempts:
                return None
            item.attempts += 1
            return item.attempts

    def consume(self, email: str, challenge_id: str, max_attempts: int) -> bool:
        key = normalize_email(email)
        with self._lock:
            item = self._items.get(key)
            if item is None or item.challenge_id != challenge_id or item.attempts >= max_attempts:
                return False
            del self._items[key]
            return True

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            stale = [k for k, v in self._items.items() if v.is_expired(now)]
            for k in stale:
                del self._items[k]
            return len(stale)


# KEYS[1] = otp:{email}; ARGV = challenge_id, max_attempts
_REDIS_REGISTER_FAILURE = """
if redis.call('HGET', KEYS[1], 'challenge_id') ~= ARGV[1] then return -1 end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts') or '0')
if attempts >= tonumber(ARGV[2]) then return -1 end
return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
"""

_REDIS_CONSUME = """
if redis.call('HGET', KEYS[1], 'challenge_id') ~= ARGV[1] then return 0 end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempts') or '0')
if attempts >= tonumber(ARGV[2]) then return 0 end
return redis.call('DEL', KEYS[1])
"""


def _to_str(value: Optional[bytes | str]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisChallengeStore:
    """One hash per identity; the key TTL reclaims expired challenges."""

    def __init__(self, url: str, prefix: str = "otp", client=None) -> None:
        self.prefix = prefix
        self.redis = client if client is not None else redis.from_url(url)
        self._register_failure = self.redis.register_script(_REDIS_REGISTER_FAILURE)
        self._consume = self.redis.register_script(_REDIS_CONSUME)

    def _key(self, email: str) -> str:
        return f"{self.prefix}:{normalize_email(email)}"

    def get(self, email: str) -> Optional[Challenge]:
        try:
            raw = self.redis.hgetall(self._key(email))
        except redis.RedisError as exc:
            raise OTPStoreError(str(exc)) from exc
        if not raw:
            return None
        data = {_to_str(k): _to_str(v) for k, v in raw.items()}
        try:
            meta = json.loads(data.get("meta") or "{}")
            return Challenge(
                email=normalize_email(email),
                code=data["code"],
                expires_at=datetime.fromisoformat(meta["expires_at"]),
                attempts=int(data.get("attempts") or 0),
                provider_token=meta.get("provider_token"),
                created_at=datetime.fromisoformat(meta["created_at"]),
                challenge_id=data["challenge_id"],
            )
        except (KeyError, ValueError) as exc:
            raise OTPStoreError(f"Corrupt challenge record for {mask_email(email)}") from exc

    def replace(self, challenge: Challenge) -> None:
        key = self._key(challenge.email)
        ttl = max(int((as_utc(challenge.expires_at) - utcnow()).total_seconds()), 1)
        meta = {
            "expires_at": as_utc(challenge.expires_at).isoformat(),
            "created_at": as_utc(challenge.created_at).isoformat(),
            "provider_token": challenge.provider_token,
        }
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping={
            "challenge_id": challenge.challenge_id,
            "code": challenge.code,
            "attempts": challenge.attempts,
            "meta": json.dumps(meta),
        })
        pipe.expire(key, ttl)
        try:
            pipe.execute()
        except redis.RedisError as exc:
            raise OTPStoreError(str(exc)) from exc

    def register_failure(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        try:
            res = int(self._register_failure(keys=[self._key(email)], args=[challenge_id, max_attempts]))
        except redis.RedisError as exc:
            raise OTPStoreError(str(exc)) from exc
        return None if res < 0 else res

    def consume(self, email: str, challenge_id: str, max_attempts: int) -> bool:
        try:
            return int(self._consume(keys=[self._key(email)], args=[challenge_id, max_attempts])) == 1
        except redis.RedisError as exc:
            raise OTPStoreError(str(exc)) from exc

    def purge_expired(self, now: datetime) -> int:
        # Key TTLs already reclaim expired challenges.
        return 0


def issue_challenge(
    email: str,
    store: ChallengeStore,
    cfg: OTPConfig,
    *,
    now: Optional[datetime] = None,
    sender: Optional[EmailSender] = None,
) -> IssueResult:
    normalized = normalize_email(email)
    issued_at = now or utcnow()
    code = generate_otp_code(cfg.code_length)
    challenge = Challenge(
        email=normalized,
        code=code,
        expires_at=issued_at + timedelta(seconds=cfg.ttl_secs),
        attempts=0,
        created_at=issued_at,
    )
    try:
        store.replace(challenge)
    except OTPStoreError as exc:
        logger.error("Could not store OTP challenge for %s: %s", mask_email(normalized), exc)
        raise OTPDeliveryError("Failed to send OTP") from exc

    delivered = True
    if sender is not None:
        try:
            sender.send_code(normalized, code)
        except Exception:
            logger.exception("OTP email delivery failed for %s", mask_email(normalized))
            delivered = False
    return IssueResult(
        status=IssueStatus.CODE_PENDING,
        delivered=delivered,
        expires_at=challenge.expires_at,
        code=code if cfg.expose_dev_code else None,
    )


def check_challenge_state(record: Optional[Challenge], cfg: OTPConfig, now: datetime) -> Optional[VerifyResult]:
    """Apply the non-recoverable checks in order: missing, expired, exhausted.

    Returns None when the presented code should be compared.
    """
    if record is None:
        return VerifyResult.NOT_FOUND
    if record.is_expired(now):
        return VerifyResult.EXPIRED
    if record.attempts >= cfg.max_attempts:
        return VerifyResult.TOO_MANY_ATTEMPTS
    return None


def record_failure(store: ChallengeStore, record: Challenge, cfg: OTPConfig) -> VerifyResult:
    attempts = store.register_failure(record.email, record.challenge_id, cfg.max_attempts)
    if attempts is None or attempts >= cfg.max_attempts:
        return VerifyResult.TOO_MANY_ATTEMPTS
    return VerifyResult.INVALID_CODE


def record_success(store: ChallengeStore, record: Challenge, cfg: OTPConfig) -> VerifyResult:
    if store.consume(record.email, record.challenge_id, cfg.max_attempts):
        return VerifyResult.SUCCESS
    # Lost a race: the challenge was replaced, consumed or exhausted meanwhile.
    latest = store.get(record.email)
    if latest is not None and latest.challenge_id == record.challenge_id:
        return VerifyResult.TOO_MANY_ATTEMPTS
    return VerifyResult.NOT_FOUND


def verify_challenge(
    email: str,
    code: str,
    store: ChallengeStore,
    cfg: OTPConfig,
    *,
    now: Optional[datetime] = None,
) -> VerifyResult:
    normalized = normalize_email(email)
    record = store.get(normalized)
    state = check_challenge_state(record, cfg, now or utcnow())
    if state is not None:
        return state
    if not secrets.compare_digest((code or "").strip().encode(), record.code.encode()):
        return record_failure(store, record, cfg)
    return record_success(store, record, cfg)


@dataclass
class LocalChallengeBackend:
    store: ChallengeStore
    cfg: OTPConfig
    sender: Optional[EmailSender] = None
    clock: Callable[[], datetime] = utcnow

    def issue(self, email: str) -> IssueResult:
        return issue_challenge(email, self.store, self.cfg, now=self.clock(), sender=self.sender)

    def verify(self, email: str, code: str) -> VerifyResult:
        return verify_challenge(email, code, self.store, self.cfg, now=self.clock())
