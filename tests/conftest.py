"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from multamind.agents import AgentGateway, PlanModels  # noqa: E402

JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"
WEBHOOK_SECRET = "whsec_test_secret"

PLANS = {
    "free": PlanModels(agent_a="gpt-free", agent_b="gemini-free", moderator="multa-free"),
    "standard": PlanModels(agent_a="gpt-std", agent_b="gemini-std", moderator="multa-std"),
    "pro": PlanModels(agent_a="gpt-pro", agent_b="gemini-pro", moderator="multa-pro"),
}


class CompletionStub:
    """Stands in for the chat-completions endpoint via ``httpx.MockTransport``.

    Replies ``"<model>: <last user message>"`` and records every request.
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.fail_models: set[str] = set()
        self.status = 200

    @property
    def models(self) -> List[str]:
        return [c["model"] for c in self.calls]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append({"model": body["model"], "messages": body["messages"], "headers": dict(request.headers)})
        if body["model"] in self.fail_models:
            return httpx.Response(502, json={"error": {"message": "upstream down"}})
        last = body["messages"][-1]["content"]
        return httpx.Response(
            self.status,
            json={"choices": [{"message": {"role": "assistant", "content": f"{body['model']}: {last[:40]}"}}]},
        )


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for chat and document storage."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "MULTAMIND_CONFIG" or var.startswith("MULTAMIND__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def completions() -> CompletionStub:
    return CompletionStub()


@pytest.fixture
def gateway(completions: CompletionStub) -> AgentGateway:
    return AgentGateway(
        "https://llm.test/api/v1",
        "test-key",
        PLANS,
        headers={"X-Title": "MultaMind"},
        transport=httpx.MockTransport(completions),
    )


@pytest.fixture
def documents(tmp_data_dir: Path):
    from multamind.documents import DocumentStore

    return DocumentStore(tmp_data_dir / "db")


@pytest.fixture
def billing(documents):
    from multamind.billing import BillingService
    from multamind.repositories import ProfileRepository

    return BillingService(
        ProfileRepository(documents),
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        site_url="https://multamind.test",
        prices={"pro_monthly": "price_pro_m", "pro_yearly": "price_pro_y", "standard_monthly": "price_std_m"},
        grace_period_days=3,
    )


@pytest.fixture
def app(project_root: Path, clean_env, gateway, documents, billing):
    from multamind.auth import TokenVerifier
    from multamind.server import create_app

    return create_app(
        str(project_root / "config" / "default.yaml"),
        gateway=gateway,
        documents=documents,
        billing=billing,
        verifier=TokenVerifier(JWT_SECRET),
    )


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


def bearer(uid: str, email: str | None = None) -> Dict[str, str]:
    """Authorization header for ``uid`` signed with the test secret."""
    from multamind.auth import issue_token

    return {"Authorization": f"Bearer {issue_token(uid, JWT_SECRET, email=email)}"}
