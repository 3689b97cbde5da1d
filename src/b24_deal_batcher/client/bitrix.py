"""Bitrix24 REST client.

Every call:
1. Refreshes the OAuth token through the credential store when it is near expiry
2. POSTs JSON to https://{domain}/rest/{method} with the access token as `auth`
3. Unwraps `result` (plus `next`/`total` cursors) or raises RemoteError

Batch calls pack up to 50 sub-calls into one `batch` request. Each sub-call is
a query-string encoded command, e.g. ``crm.deal.update?ID=5&FIELDS[UF_CRM_1]=11``.
"""

import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from b24_deal_batcher.errors import RemoteError
from b24_deal_batcher.store.credential_store import CredentialStore

logger = logging.getLogger(__name__)

# Bitrix rejects batches with more sub-calls than this
MAX_BATCH_COMMANDS = 50


class RemoteResponse(BaseModel):
    """Unwrapped REST response."""

    result: Any = None
    next: Optional[int] = None
    total: Optional[int] = None


class BatchItemResult(BaseModel):
    """Outcome of one sub-call of a batch."""

    key: str
    ok: bool
    result: Any = None
    error: Optional[str] = None


def _encode_value(prefix: str, value: Any, parts: list[str]) -> None:
    if isinstance(value, Mapping):
        for k, v in value.items():
            _encode_value(f"{prefix}[{quote(str(k), safe='')}]", v, parts)
    elif isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            _encode_value(f"{prefix}[{i}]", v, parts)
    else:
        if value is None:
            value = ""
        elif isinstance(value, bool):
            value = "Y" if value else "N"
        parts.append(f"{prefix}={quote(str(value), safe='')}")


def encode_command(method: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Encode one batch sub-call: method name, then percent-encoded KEY=value pairs.
    Nested mappings become KEY[sub]=value, e.g. FIELDS[UF_CRM_1]=11.
    """
    parts: list[str] = []
    for key, value in (params or {}).items():
        _encode_value(quote(str(key), safe=""), value, parts)
    return f"{method}?{'&'.join(parts)}" if parts else method


class BitrixClient:
    """Thin wrapper over the Bitrix24 REST API using an OAuth access token."""

    DEFAULT_HEADERS = {
        "User-Agent": "b24-deal-batcher/0.1",
        "Accept": "application/json",
    }

    def __init__(
        self,
        store: CredentialStore,
        *,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self._store = store
        self._client = client or httpx.Client(timeout=timeout, headers=self.DEFAULT_HEADERS)

    def _url(self, method: str) -> str:
        domain = self._store.record.domain.strip().rstrip("/")
        if "://" in domain:
            domain = domain.split("://", 1)[1]
        return f"https://{domain}/rest/{method}"

    def invoke(self, method: str, params: Optional[Mapping[str, Any]] = None) -> RemoteResponse:
        """Call one REST method. Raises RemoteError on transport, empty or error responses."""
        self._store.refresh_if_needed()
        url = self._url(method)
        body = {**(params or {}), "auth": self._store.record.access_token}

        try:
            resp = self._client.post(url, json=body)
        except httpx.HTTPError as e:
            raise RemoteError(f"{method}: request failed: {e}") from e

        if not resp.content or not resp.content.strip():
            raise RemoteError(f"{method}: empty response (HTTP {resp.status_code})", status_code=resp.status_code)
        try:
            payload = resp.json()
        except ValueError as e:
            raise RemoteError(
                f"{method}: non-JSON response (HTTP {resp.status_code})", status_code=resp.status_code
            ) from e
        if not isinstance(payload, dict) or not payload:
            raise RemoteError(f"{method}: empty response (HTTP {resp.status_code})", status_code=resp.status_code)

        if payload.get("error"):
            err = RemoteError.from_payload(payload, resp.status_code)
            logger.warning("Bitrix24 error on %s: %s", method, err)
            raise RemoteError(f"{method}: {err}", code=err.code, description=err.description,
                              status_code=resp.status_code)
        if resp.status_code >= 400:
            raise RemoteError(f"{method}: HTTP {resp.status_code}", status_code=resp.status_code)

        return RemoteResponse(
            result=payload.get("result"),
            next=payload.get("next"),
            total=payload.get("total"),
        )

    def invoke_batch(self, commands: Mapping[str, str], *, halt: bool = False) -> dict[str, BatchItemResult]:
        """
        Run pre-encoded sub-calls in one `batch` request.
        A sub-call succeeded only if its result is literally True; anything else
        is reported as a failed item rather than raised.
        """
        if len(commands) > MAX_BATCH_COMMANDS:
            raise ValueError(f"Batch holds at most {MAX_BATCH_COMMANDS} commands, got {len(commands)}")
        response = self.invoke("batch", {"halt": 1 if halt else 0, "cmd": dict(commands)})

        outer = response.result if isinstance(response.result, dict) else {}
        results = outer.get("result") or {}
        errors = outer.get("result_error") or {}
        # Bitrix serialises empty maps as []
        if not isinstance(results, dict):
            results = {}
        if not isinstance(errors, dict):
            errors = {}

        items: dict[str, BatchItemResult] = {}
        for key in commands:
            value = results.get(key)
            ok = value is True
            error = None
            if not ok:
                err_payload = errors.get(key)
                if isinstance(err_payload, dict):
                    error = str(RemoteError.from_payload(err_payload))
                elif err_payload:
                    error = str(err_payload)
                elif key not in results:
                    error = "no result returned"
                else:
                    error = f"unexpected result: {value!r}"
            items[key] = BatchItemResult(key=key, ok=ok, result=value, error=error)
        return items
