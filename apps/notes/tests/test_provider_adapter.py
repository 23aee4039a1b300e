import json
from datetime import timedelta

import httpx
import pytest

from notes_shared import (
    PROVIDER_PLACEHOLDER_CODE,
    IssueStatus,
    LocalChallengeBackend,
    MemoryChallengeStore,
    OTPConfig,
    VerifyResult,
)

from app.authsignal import AuthsignalClient, ProviderError
from app.utils.otp import ProviderChallengeBackend

from .test_otp import Clock


class FakeAuthsignal:
    """Scripted Authsignal API behind an httpx.MockTransport."""

    def __init__(self, state="CHALLENGE_REQUIRED", token="tok-123", valid=True):
        self.state = state
        self.token = token
        self.valid = valid
        self.track_status = 200
        self.fail_validate = False
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/validate"):
            if self.fail_validate:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"isValid": self.valid, "state": "CHALLENGE_SUCCEEDED" if self.valid else "CHALLENGE_FAILED"})
        if self.track_status != 200:
            return httpx.Response(self.track_status, json={"error": "unavailable"})
        return httpx.Response(200, json={"state": self.state, "token": self.token, "idempotencyKey": "idem-1"})

    def calls_to(self, suffix: str) -> list:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


@pytest.fixture
def fake():
    return FakeAuthsignal()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return MemoryChallengeStore()


@pytest.fixture
def backend(fake, store, clock):
    client = AuthsignalClient(secret="tenant-secret", base_url="https://authsignal.test/v1", transport=httpx.MockTransport(fake))
    local = LocalChallengeBackend(store=store, cfg=OTPConfig(ttl_secs=600, max_attempts=3, expose_dev_code=True), clock=clock)
    return ProviderChallengeBackend(client=client, local=local)


def test_track_posts_to_user_action_with_basic_auth(backend, fake):
    backend.issue("Zoe@Example.com")
    req = fake.calls_to("/actions/signIn")[0]
    assert req.url.path == "/v1/users/zoe%40example.com/actions/signIn"
    assert req.headers["authorization"].startswith("Basic ")
    assert json.loads(req.content) == {"email": "zoe@example.com"}


def test_challenge_required_stores_placeholder_and_token(backend, store):
    res = backend.issue("zoe@example.com")
    assert res.status == IssueStatus.CODE_PENDING
    assert res.delivered is True
    assert res.code is None
    record = store.get("zoe@example.com")
    assert record.code == PROVIDER_PLACEHOLDER_CODE
    assert record.provider_token == "tok-123"
    assert record.attempts == 0


def test_delegated_verify_success_consumes(backend, fake, store):
    backend.issue("zoe@example.com")
    assert backend.verify("zoe@example.com", " 123456 ") == VerifyResult.SUCCESS
    body = json.loads(fake.calls_to("/validate")[0].content)
    assert body == {"token": "tok-123", "userId": "zoe@example.com", "verificationCode": "123456"}
    assert store.get("zoe@example.com") is None


def test_delegated_verify_rejection_counts_attempts(backend, fake, store):
    fake.valid = False
    backend.issue("zoe@example.com")
    assert backend.verify("zoe@example.com", "000000") == VerifyResult.INVALID_CODE
    assert backend.verify("zoe@example.com", "000000") == VerifyResult.INVALID_CODE
    assert backend.verify("zoe@example.com", "000000") == VerifyResult.TOO_MANY_ATTEMPTS
    assert store.get("zoe@example.com").attempts == 3


def test_placeholder_is_never_accepted_locally(backend, fake):
    fake.valid = False
    backend.issue("zoe@example.com")
    assert backend.verify("zoe@example.com", PROVIDER_PLACEHOLDER_CODE) == VerifyResult.INVALID_CODE


def test_provider_outage_on_verify_is_not_recovered(backend, fake, store):
    backend.issue("zoe@example.com")
    fake.fail_validate = True
    assert backend.verify("zoe@example.com", "123456") == VerifyResult.VERIFICATION_FAILED
    # Challenge untouched so the user can retry.
    record = store.get("zoe@example.com")
    assert record is not None and record.attempts == 0


def test_expired_delegated_challenge_skips_provider(backend, fake, clock):
    backend.issue("zoe@example.com")
    clock.advance(seconds=601)
    assert backend.verify("zoe@example.com", "123456") == VerifyResult.EXPIRED
    assert fake.calls_to("/validate") == []


def test_allow_is_pre_verified_and_stores_nothing(backend, fake, store):
    fake.state = "ALLOW"
    res = backend.issue("zoe@example.com")
    assert res.status == IssueStatus.PRE_VERIFIED
    assert store.get("zoe@example.com") is None


def test_block_is_reported(backend, fake, store):
    fake.state = "BLOCK"
    res = backend.issue("zoe@example.com")
    assert res.status == IssueStatus.BLOCKED
    assert store.get("zoe@example.com") is None


@pytest.mark.parametrize("setup", ["http_error", "unknown_state", "missing_token"])
def test_issue_falls_back_to_local_code(backend, fake, store, setup):
    if setup == "http_error":
        fake.track_status = 503
    elif setup == "unknown_state":
        fake.state = "REVIEW"
    else:
        fake.token = None
    res = backend.issue("zoe@example.com")
    assert res.status == IssueStatus.CODE_PENDING
    assert res.code is not None and len(res.code) == 6
    record = store.get("zoe@example.com")
    assert record.provider_token is None
    # Verified locally; the provider is never asked.
    assert backend.verify("zoe@example.com", res.code) == VerifyResult.SUCCESS
    assert fake.calls_to("/validate") == []


def test_client_rejects_malformed_validate_body():
    def handler(request):
        return httpx.Response(200, json={"unexpected": True})

    client = AuthsignalClient(secret="s", base_url="https://authsignal.test/v1", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError):
        client.validate_challenge("tok")


def test_client_wraps_timeouts():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = AuthsignalClient(secret="s", base_url="https://authsignal.test/v1", timeout_secs=0.1, transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderError):
        client.track("zoe@example.com", "signIn")


def test_reissue_after_delegation_gets_fresh_budget(backend, fake, store, clock):
    fake.valid = False
    backend.issue("zoe@example.com")
    backend.verify("zoe@example.com", "000000")
    clock.advance(seconds=30)
    fake.token = "tok-456"
    backend.issue("zoe@example.com")
    record = store.get("zoe@example.com")
    assert record.provider_token == "tok-456"
    assert record.attempts == 0
    assert record.expires_at == clock() + timedelta(seconds=600)
