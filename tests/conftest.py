import pathlib
import sys
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caseflow.case_model import CaseRecord
from caseflow.main import create_app
from caseflow.store import store

JWT_SECRET = "jwt_test_secret"


def _issue_token(*, secret: str, organization_id: str, subject: str, roles: list[str] | None) -> str:
    now = datetime.now(UTC)
    payload: dict[str, object] = {
        "sub": subject,
        "name": subject.replace("_", " ").title(),
        "organization_id": organization_id,
        "exp": int((now + timedelta(minutes=30)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    if roles is not None:
        payload["roles"] = roles
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    def __init__(
        self,
        client: TestClient,
        *,
        jwt_secret: str,
        subject: str = "user_a",
        roles: list[str] | None = None,
    ):
        self._client = client
        self._jwt_secret = jwt_secret
        self._subject = subject
        self._roles = roles

    def as_user(self, subject: str, *, roles: list[str] | None = None) -> "AuthenticatedClient":
        return AuthenticatedClient(self._client, jwt_secret=self._jwt_secret, subject=subject, roles=roles)

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and not url.startswith("/api/v1/internal/"):
            if "Authorization" not in headers:
                organization_id = headers.get("x-tenant-id") or "org_default"
                token = _issue_token(
                    secret=self._jwt_secret,
                    organization_id=str(organization_id),
                    subject=self._subject,
                    roles=self._roles,
                )
                headers["Authorization"] = f"Bearer {token}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "organization_id,sub,exp")
    monkeypatch.delenv("PIPELINE_QC_SAMPLING_PERCENTAGE", raising=False)
    monkeypatch.delenv("PIPELINE_BATCH_MAX_SIZE", raising=False)
    store.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    app = create_app()
    base = TestClient(app)
    return AuthenticatedClient(base, jwt_secret=JWT_SECRET)


@pytest.fixture
def make_case():
    """Build an unsaved triage case; keyword overrides set any CaseRecord field."""
    counter = {"n": 0}

    def _make(**overrides) -> CaseRecord:
        counter["n"] += 1
        n = counter["n"]
        stamp = (datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=n)).isoformat()
        fields = {
            "id": f"case_{n:04d}",
            "organization_id": "org_default",
            "title": f"Article {n}",
            "pmid": str(30000000 + n),
            "created_at": stamp,
            "updated_at": stamp,
        }
        fields.update(overrides)
        return CaseRecord(**fields)

    return _make
