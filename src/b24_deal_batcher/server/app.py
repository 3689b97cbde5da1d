"""Installer HTTP app: receives portal credentials and writes tokens.json.

The portal POSTs an install payload when the local app is installed. Three
shapes are accepted:
1. JSON: {"auth": {"access_token": ..., "refresh_token": ..., "expires_in": ..., "domain": ...}}
2. Form: auth[access_token]=...&auth[refresh_token]=...&auth[domain]=...
3. Form: AUTH_ID=...&REFRESH_ID=...&AUTH_EXPIRES=...&DOMAIN=... (domain may be in the query string)
"""

import hmac
import json
import logging
import time
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from b24_deal_batcher.config import Settings
from b24_deal_batcher.models.credentials import CredentialRecord
from b24_deal_batcher.store.credential_store import CredentialStore

logger = logging.getLogger(__name__)

# Handler payloads are logged up to this many characters
_LOG_PAYLOAD_CHARS = 2000


def _nest_form(pairs: list[tuple[str, str]]) -> dict[str, Any]:
    """Turn auth[access_token]=x style keys into nested dicts."""
    out: dict[str, Any] = {}
    for key, value in pairs:
        if "[" in key and key.endswith("]"):
            head, _, rest = key.partition("[")
            node = out.setdefault(head, {})
            if not isinstance(node, dict):
                continue
            subkeys = rest[:-1].split("][")
            for sub in subkeys[:-1]:
                node = node.setdefault(sub, {})
            node[subkeys[-1]] = value
        else:
            out[key] = value
    return out


async def _read_payload(request: Request) -> dict[str, Any]:
    """JSON or form body; empty dict when there is none."""
    raw = await request.body()
    if not raw:
        return {}
    content_type = request.headers.get("content-type", "")
    if "json" in content_type:
        try:
            data = json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=400, detail="Malformed JSON body")
        return data if isinstance(data, dict) else {}
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Form body is not valid UTF-8")
    return _nest_form(parse_qsl(text, keep_blank_values=True))


def _first(*values: Any) -> Optional[Any]:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _to_int(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _now_ms() -> int:
    return int(time.time() * 1000)


def record_from_install(body: dict[str, Any], query: dict[str, Any]) -> Optional[CredentialRecord]:
    """Extract a credential record from an install payload; None if no access token."""
    auth = body.get("auth") or body.get("AUTH") or body
    if not isinstance(auth, dict):
        auth = body
    access_token = _first(auth.get("access_token"), body.get("AUTH_ID"))
    domain = _first(
        body.get("domain"), body.get("DOMAIN"), auth.get("domain"), query.get("DOMAIN"), query.get("domain")
    )
    if not access_token or not domain:
        return None
    return CredentialRecord(
        domain=str(domain),
        access_token=str(access_token),
        refresh_token=_first(auth.get("refresh_token"), auth.get("refresh_token_key"), body.get("REFRESH_ID")),
        expires_in=_to_int(_first(auth.get("expires_in"), auth.get("expires"), body.get("AUTH_EXPIRES"))),
        received_at=_now_ms(),
    )


def create_app(store: CredentialStore, settings: Settings) -> FastAPI:
    """Build the installer app around one credential store."""
    app = FastAPI(title="b24-deal-batcher installer")

    @app.get("/", response_class=PlainTextResponse)
    def index() -> str:
        return "b24-deal-batcher is up. Use /install to set tokens."

    @app.get("/health")
    def health() -> dict:
        return {"ok": True, "tokens_present": store.path.exists()}

    @app.get("/tokens")
    def tokens():
        # Exposes secrets: debug deployments only
        if not settings.debug:
            raise HTTPException(status_code=403, detail="Forbidden")
        if not store.path.exists():
            return {"present": False}
        return JSONResponse(json.loads(store.path.read_text(encoding="utf-8")))

    @app.post("/install", response_class=HTMLResponse)
    async def install(request: Request) -> str:
        body = await _read_payload(request)
        record = record_from_install(body, dict(request.query_params))
        if record is None:
            raise HTTPException(status_code=400, detail="Install payload missing auth.access_token or domain")
        store.save(record)
        logger.info("Install received for %s", record.domain)
        return "<h2>Application installed. Tokens saved.</h2>"

    @app.post("/set-tokens")
    async def set_tokens(request: Request) -> dict:
        body = await _read_payload(request)
        if settings.setup_token:
            provided = _first(
                request.headers.get("x-setup-token"),
                request.query_params.get("setup_token"),
                body.get("setup_token"),
            )
            if not hmac.compare_digest(str(provided or "").encode(), settings.setup_token.encode()):
                raise HTTPException(status_code=403, detail="Forbidden: invalid setup token")

        auth = body.get("auth") if isinstance(body.get("auth"), dict) else {}
        domain = _first(body.get("domain"), body.get("DOMAIN"))
        access_token = _first(body.get("access_token"), auth.get("access_token"))
        if not domain or not access_token:
            raise HTTPException(status_code=400, detail="domain and access_token required")

        store.save(
            CredentialRecord(
                domain=str(domain),
                access_token=str(access_token),
                refresh_token=_first(body.get("refresh_token"), auth.get("refresh_token")),
                expires_in=_to_int(body.get("expires_in")),
                received_at=_now_ms(),
            )
        )
        return {"ok": True}

    @app.post("/handler")
    async def handler(request: Request) -> dict:
        body = await _read_payload(request)
        # Event payloads carry portal tokens under `auth`
        redacted = {k: v for k, v in body.items() if k.lower() != "auth"}
        logger.info("[handler] incoming: %s", json.dumps(redacted, default=str)[:_LOG_PAYLOAD_CHARS])
        return {"ok": True}

    return app
