import jwt
import pytest

from app import federated
from app.federated import FederatedIdentity, FederatedTokenError, GoogleTokenVerifier

from .utils import register_user, unique_email


class FakeVerifier:
    configured = True

    def __init__(self):
        self.identities = {}

    def add(self, token: str, identity: FederatedIdentity) -> None:
        self.identities[token] = identity

    def verify(self, id_token: str) -> FederatedIdentity:
        if id_token not in self.identities:
            raise FederatedTokenError("Invalid Google token")
        return self.identities[id_token]


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def gclient(make_client, verifier):
    return make_client(federated_verifier=verifier)


def test_new_google_user_is_created_verified(gclient, verifier):
    email = unique_email("google")
    verifier.add("tok-new", FederatedIdentity(subject="g-1001", email=email, name="Gina", picture="https://img.example/g.png"))
    r = gclient.post("/auth/google", json={"id_token": "tok-new"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["message"] == "Sign in successful"
    assert body["user"]["email"] == email
    assert body["user"]["verified"] is True
    assert body["user"]["profile_picture"] == "https://img.example/g.png"
    assert body["user"]["dob"] is None

    r = gclient.get("/notes", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert r.status_code == 200


def test_existing_user_is_linked_once(gclient, verifier):
    email = unique_email("linked")
    register_user(gclient, email, name="Existing")
    verifier.add("tok-a", FederatedIdentity(subject="g-2001", email=email, name="Ignored", picture="https://img.example/a.png"))
    r = gclient.post("/auth/google", json={"id_token": "tok-a"})
    assert r.status_code == 200
    user = r.json()["user"]
    assert user["name"] == "Existing"
    assert user["profile_picture"] == "https://img.example/a.png"

    # A second Google subject for the same email does not replace the linkage or avatar.
    verifier.add("tok-b", FederatedIdentity(subject="g-2002", email=email, picture="https://img.example/b.png"))
    r = gclient.post("/auth/google", json={"id_token": "tok-b"})
    assert r.status_code == 200
    assert r.json()["user"]["id"] == user["id"]
    assert r.json()["user"]["profile_picture"] == "https://img.example/a.png"

    # The original subject still resolves to the same account.
    r = gclient.post("/auth/google", json={"id_token": "tok-a"})
    assert r.json()["user"]["id"] == user["id"]


def test_google_signin_verifies_pending_account(gclient, verifier):
    email = unique_email("pending")
    r = gclient.post("/auth/signup", json={"email": email, "name": "Pending", "dob": "1990-01-01"})
    assert r.status_code == 201
    verifier.add("tok-p", FederatedIdentity(subject="g-3001", email=email))
    r = gclient.post("/auth/google", json={"id_token": "tok-p"})
    assert r.status_code == 200
    assert r.json()["user"]["verified"] is True


def test_invalid_google_token_is_400(gclient):
    r = gclient.post("/auth/google", json={"id_token": "forged"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "invalid_federated_token"


def test_unconfigured_google_signin_is_500(client):
    r = client.post("/auth/google", json={"id_token": "anything"})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "federation_unconfigured"


def _verifier() -> GoogleTokenVerifier:
    return GoogleTokenVerifier(
        client_id="client-123.apps.googleusercontent.com",
        jwks_url="https://www.googleapis.com/oauth2/v3/certs",
        issuers=["accounts.google.com", "https://accounts.google.com"],
    )


def test_verifier_maps_claims(monkeypatch):
    seen = {}

    def fake_decode(token, jwks_url, audience=None, issuer=None, *, require=(), timeout=5):
        seen.update(audience=audience, issuer=issuer, require=require)
        return {"sub": "g-9", "email": " Mixed@Example.com ", "email_verified": True, "name": "Mia", "picture": None}

    monkeypatch.setattr(federated, "decode_with_jwks", fake_decode)
    identity = _verifier().verify("id-token")
    assert identity == FederatedIdentity(subject="g-9", email="mixed@example.com", name="Mia", picture=None)
    assert seen["audience"] == "client-123.apps.googleusercontent.com"
    assert "accounts.google.com" in seen["issuer"]
    assert "email" in seen["require"]


def test_verifier_rejects_unverified_email(monkeypatch):
    monkeypatch.setattr(
        federated,
        "decode_with_jwks",
        lambda *a, **kw: {"sub": "g-9", "email": "x@example.com", "email_verified": False},
    )
    with pytest.raises(FederatedTokenError):
        _verifier().verify("id-token")


def test_verifier_wraps_jwt_errors(monkeypatch):
    def boom(*a, **kw):
        raise jwt.InvalidAudienceError("wrong audience")

    monkeypatch.setattr(federated, "decode_with_jwks", boom)
    with pytest.raises(FederatedTokenError):
        _verifier().verify("id-token")
