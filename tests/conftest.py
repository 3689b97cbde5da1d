"""Pytest fixtures for b24-deal-batcher tests."""

import json
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from b24_deal_batcher.config import Settings
from b24_deal_batcher.store.credential_store import CredentialStore

DOMAIN = "portal.bitrix24.test"
T0 = 1_700_000_000_000  # epoch ms


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now


class FakeBitrix:
    """
    In-memory stand-in for a Bitrix24 portal, served through httpx.MockTransport.
    Supports crm.deal.list (50-row pages with `next`), batch of crm.deal.update,
    and the OAuth token endpoint.
    """

    PAGE_SIZE = 50

    def __init__(self, deal_count: int = 0, *, failing_ids: Optional[set[str]] = None):
        self.deals: dict[str, dict[str, Any]] = {
            str(i): {"ID": str(i), "TITLE": f"Deal {i}"} for i in range(1, deal_count + 1)
        }
        self.failing_ids = failing_ids or set()
        self.requests: list[tuple[str, dict]] = []
        self.list_error: Optional[dict] = None
        self.token_response: dict = {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600}

    def calls(self, method: str) -> list[dict]:
        return [body for m, body in self.requests if m == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/oauth/token"):
            body = dict(parse_qsl(request.content.decode()))
            self.requests.append(("oauth.token", body))
            return httpx.Response(200, json=self.token_response)

        method = path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        self.requests.append((method, body))
        if method == "crm.deal.list":
            return self._list(body)
        if method == "batch":
            return self._batch(body)
        return httpx.Response(400, json={"error": "ERROR_METHOD_NOT_FOUND", "error_description": "Method not found"})

    def _list(self, body: dict) -> httpx.Response:
        if self.list_error:
            return httpx.Response(400, json=self.list_error)
        rows = sorted(self.deals.values(), key=lambda d: int(d["ID"]))
        start = int(body.get("start", 0))
        page = rows[start:start + self.PAGE_SIZE]
        payload: dict[str, Any] = {"result": [dict(r) for r in page], "total": len(rows)}
        if start + self.PAGE_SIZE < len(rows):
            payload["next"] = start + self.PAGE_SIZE
        return httpx.Response(200, json=payload)

    def _batch(self, body: dict) -> httpx.Response:
        results: dict[str, Any] = {}
        errors: dict[str, Any] = {}
        for key, command in body["cmd"].items():
            method, _, query = command.partition("?")
            args = dict(parse_qsl(query))
            deal_id = args.pop("ID")
            if method != "crm.deal.update" or deal_id in self.failing_ids or deal_id not in self.deals:
                errors[key] = {"error": "ACCESS_DENIED", "error_description": f"Cannot update deal {deal_id}"}
                continue
            for arg, value in args.items():
                if arg.startswith("FIELDS[") and arg.endswith("]"):
                    self.deals[deal_id][arg[len("FIELDS["):-1]] = value
            results[key] = True
        return httpx.Response(200, json={"result": {"result": results, "result_error": errors or []}})

    def http_client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


def write_tokens(path: Path, **record: Any) -> None:
    data = {"domain": DOMAIN, "access_token": "access-1"}
    data.update(record)
    path.write_text(json.dumps(data), encoding="utf-8")


def make_deals(count: int, start: int = 1) -> list[dict[str, Any]]:
    return [{"ID": str(i), "TITLE": f"Deal {i}"} for i in range(start, start + count)]


@pytest.fixture
def tokens_path(tmp_path: Path) -> Path:
    return tmp_path / "tokens.json"


@pytest.fixture
def settings(tokens_path: Path) -> Settings:
    """Settings with refresh client credentials and an isolated tokens file."""
    return Settings(tokens_file=tokens_path, client_id="client-id", client_secret="client-secret")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_bitrix() -> FakeBitrix:
    return FakeBitrix()


@pytest.fixture
def store(settings: Settings, tokens_path: Path, fake_bitrix: FakeBitrix, clock: FakeClock) -> CredentialStore:
    """Store with a static (non-expiring) token already on disk."""
    write_tokens(tokens_path)
    return CredentialStore(settings, client=fake_bitrix.http_client(), clock=clock)
