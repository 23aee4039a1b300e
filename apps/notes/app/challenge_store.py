from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notes_shared import Challenge, OTPStoreError, normalize_email
from notes_shared.otp import as_utc

from .models import OtpChallenge


logger = logging.getLogger("notes.otp")


def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def _to_challenge(row: OtpChallenge) -> Challenge:
    return Challenge(
        email=row.email,
        code=row.code,
        expires_at=as_utc(row.expires_at),
        attempts=row.attempts,
        provider_token=row.provider_token,
        created_at=as_utc(row.created_at),
        challenge_id=row.id,
    )


class SqlChallengeStore:
    """Challenge store on the service database.

    The unique index on ``email`` keeps one active challenge per identity;
    attempt increments and consumption are conditional statements whose
    rowcount decides the winner between concurrent verifications.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _run(self, fn, *, retries: int = 0):
        for attempt in range(retries + 1):
            db = self.session_factory()
            try:
                out = fn(db)
                db.commit()
                return out
            except IntegrityError as exc:
                db.rollback()
                if attempt >= retries:
                    raise OTPStoreError(str(exc)) from exc
                logger.info("Challenge write collided with a concurrent writer, retrying")
            except SQLAlchemyError as exc:
                db.rollback()
                raise OTPStoreError(str(exc)) from exc
            finally:
                db.close()

    def get(self, email: str) -> Optional[Challenge]:
        def _get(db: Session):
            row = db.execute(select(OtpChallenge).where(OtpChallenge.email == normalize_email(email))).scalar_one_or_none()
            return _to_challenge(row) if row is not None else None
        return self._run(_get)

    def replace(self, challenge: Challenge) -> None:
        email = normalize_email(challenge.email)

        def _replace(db: Session):
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            db.execute(delete(OtpChallenge).where((OtpChallenge.email == email) | (OtpChallenge.expires_at < now)))
            db.add(OtpChallenge(
                id=challenge.challenge_id,
                email=email,
                code=challenge.code,
                provider_token=challenge.provider_token,
                expires_at=_naive_utc(challenge.expires_at),
                attempts=challenge.attempts,
                created_at=_naive_utc(challenge.created_at),
            ))
        # A concurrent issue for the same email can win the unique index; the
        # retry deletes its row and takes over.
        self._run(_replace, retries=1)

    def register_failure(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        def _incr(db: Session):
            res = db.execute(
                update(OtpChallenge)
                .where(
                    OtpChallenge.id == challenge_id,
                    OtpChallenge.email == normalize_email(email),
                    OtpChallenge.attempts < max_attempts,
                )
                .values(attempts=OtpChallenge.attempts + 1)
            )
            if res.rowcount != 1:
                return None
            return db.execute(select(OtpChallenge.attempts).where(OtpChallenge.id == challenge_id)).scalar_one()
        return self._run(_incr)

    def consume(self, email: str, challenge_id: str, max_attempts: int) -> bool:
        def _consume(db: Session):
            res = db.execute(
                delete(OtpChallenge).where(
                    OtpChallenge.id == challenge_id,
                    OtpChallenge.email == normalize_email(email),
                    OtpChallenge.attempts < max_attempts,
                )
            )
            return res.rowcount == 1
        return self._run(_consume)

    def purge_expired(self, now: datetime) -> int:
        def _purge(db: Session):
            return db.execute(delete(OtpChallenge).where(OtpChallenge.expires_at < _naive_utc(now))).rowcount
        return self._run(_purge)
