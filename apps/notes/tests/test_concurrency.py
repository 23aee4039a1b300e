import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from notes_shared import LocalChallengeBackend, MemoryChallengeStore, OTPConfig, VerifyResult

from app.challenge_store import SqlChallengeStore
from app.models import Base


WORKERS = 8


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemoryChallengeStore()
        return
    # A file database so each worker gets its own connection.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'challenges.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield SqlChallengeStore(sessionmaker(bind=engine, autoflush=False))
    engine.dispose()


@pytest.fixture
def backend(store):
    return LocalChallengeBackend(store=store, cfg=OTPConfig(max_attempts=3, expose_dev_code=True))


def _race(n, fn):
    barrier = threading.Barrier(n)

    def run():
        barrier.wait()
        return fn()

    with ThreadPoolExecutor(max_workers=n) as ex:
        futs = [ex.submit(run) for _ in range(n)]
        return [f.result() for f in as_completed(futs)]


def test_parallel_correct_codes_succeed_once(backend):
    code = backend.issue("race@example.com").code
    results = _race(WORKERS, lambda: backend.verify("race@example.com", code))
    assert results.count(VerifyResult.SUCCESS) == 1
    assert results.count(VerifyResult.NOT_FOUND) == WORKERS - 1


def test_parallel_wrong_codes_stay_within_budget(backend, store):
    code = backend.issue("guess@example.com").code
    bad = "000000" if code != "000000" else "111111"
    results = _race(WORKERS + 4, lambda: backend.verify("guess@example.com", bad))
    assert store.get("guess@example.com").attempts == 3
    # Only the first two increments leave budget; everyone else is told the challenge is spent.
    assert results.count(VerifyResult.INVALID_CODE) == 2
    assert results.count(VerifyResult.TOO_MANY_ATTEMPTS) == WORKERS + 2
    assert backend.verify("guess@example.com", code) == VerifyResult.TOO_MANY_ATTEMPTS


def test_parallel_reissue_leaves_one_live_challenge(backend, store):
    issued = _race(WORKERS, lambda: backend.issue("double@example.com"))
    codes = {res.code for res in issued}
    record = store.get("double@example.com")
    assert record is not None
    assert record.code in codes
    assert record.attempts == 0
    assert backend.verify("double@example.com", record.code) == VerifyResult.SUCCESS
