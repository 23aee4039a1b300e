import uuid

from fastapi.testclient import TestClient


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"


def register_user(client: TestClient, email: str, name: str = "Test User") -> dict:
    """Sign up and confirm the email with the exposed dev code."""
    r = client.post("/auth/signup", json={"email": email, "name": name, "dob": "1990-01-01"})
    assert r.status_code == 201, r.text
    body = r.json()
    r = client.post("/auth/verify-otp", json={"email": email, "otp": body["dev_code"]})
    assert r.status_code == 200, r.text
    return body


def sign_in(client: TestClient, email: str) -> dict:
    r = client.post("/auth/signin", json={"email": email})
    assert r.status_code == 200, r.text
    r = client.post("/auth/verify-signin-otp", json={"email": email, "otp": r.json()["dev_code"]})
    assert r.status_code == 200, r.text
    return r.json()


def auth_headers(client: TestClient, email: str | None = None) -> dict:
    email = email or unique_email()
    register_user(client, email)
    token = sign_in(client, email)["access_token"]
    return {"Authorization": f"Bearer {token}"}
