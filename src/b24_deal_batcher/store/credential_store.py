"""File-backed credential store with proactive OAuth token refresh."""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from b24_deal_batcher.config import Settings
from b24_deal_batcher.errors import (
    AuthError,
    ConfigurationError,
    MissingRefreshCredentialsError,
    RemoteError,
)
from b24_deal_batcher.models.credentials import CredentialRecord

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class CredentialStore:
    """
    Holds the one credential record for a portal.
    Loaded from a flat JSON file; mutated only by refresh or by explicit save().
    Every write fully replaces the file.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self._settings = settings
        self._path = Path(settings.tokens_file)
        self._client = client or httpx.Client(timeout=settings.http_timeout)
        self._clock = clock
        self._record: Optional[CredentialRecord] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def record(self) -> CredentialRecord:
        """Current record; loads lazily. Raises ConfigurationError if none can be established."""
        if self._record is None:
            self.load()
        if self._record is None or not self._record.is_configured():
            raise ConfigurationError(
                f"No credentials: {self._path} not found and BITRIX_DOMAIN/BITRIX_ACCESS_TOKEN unset. "
                "Install the app (POST /install) or run `b24-batcher set-tokens`."
            )
        return self._record

    def load(self) -> Optional[CredentialRecord]:
        """
        Read the persisted record; if absent, seed one from bootstrap settings.
        Returns None when neither source is available.
        """
        if self._path.exists():
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
                self._record = CredentialRecord.model_validate(data)
            except (json.JSONDecodeError, PydanticValidationError) as e:
                raise ConfigurationError(f"Unreadable credential file {self._path}: {e}") from e
            return self._record

        domain = self._settings.bootstrap_domain
        token = self._settings.bootstrap_access_token
        if domain and token:
            logger.info("No %s; using bootstrap credentials for %s", self._path, domain)
            self._record = CredentialRecord(domain=domain, access_token=token)
        else:
            self._record = None
        return self._record

    def is_configured(self) -> bool:
        """True iff a record with non-empty host and access token is available."""
        try:
            return self.record.is_configured()
        except ConfigurationError:
            return False

    def save(self, record: CredentialRecord) -> None:
        """Replace the record (external install/config event) and persist it."""
        self._record = record
        self.persist()

    def persist(self) -> None:
        """Atomically overwrite the backing file with the full record."""
        if self._record is None:
            raise ConfigurationError("Nothing to persist: no credential record loaded")
        payload = json.dumps(self._record.model_dump(mode="json"), indent=2)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".tokens-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self._path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Credentials saved to %s", self._path)

    def needs_refresh(self) -> bool:
        record = self.record
        return self._settings.auto_refresh and record.is_expired(self._clock())

    def refresh_if_needed(self) -> bool:
        """
        Refresh the access token if it is inside the expiry margin.
        Returns True when a refresh exchange happened.
        """
        if not self.needs_refresh():
            return False
        self.refresh()
        return True

    def refresh(self) -> CredentialRecord:
        """Perform one refresh_token grant, update the record in place and persist."""
        record = self.record
        if not record.refresh_token:
            raise AuthError("Access token expired and no refresh_token is stored. Reinstall the app.")
        if not (self._settings.client_id and self._settings.client_secret):
            raise MissingRefreshCredentialsError(
                "Access token expired; BITRIX_CLIENT_ID and BITRIX_CLIENT_SECRET are required to refresh."
            )

        url = self._settings.token_url_for(record.domain)
        data = {
            "grant_type": "refresh_token",
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "refresh_token": record.refresh_token,
        }
        try:
            resp = self._client.post(url, data=data)
        except httpx.HTTPError as e:
            raise RemoteError(f"Token refresh request failed: {e}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            raise RemoteError(f"Token endpoint returned HTTP {resp.status_code} without JSON body",
                              status_code=resp.status_code)
        if payload.get("error"):
            err = RemoteError.from_payload(payload, resp.status_code)
            raise AuthError(f"Token refresh rejected: {err}") from err
        if not payload.get("access_token"):
            raise AuthError("Token refresh response has no access_token")

        expires_in = payload.get("expires_in")
        self._record = record.model_copy(
            update={
                "access_token": payload["access_token"],
                # Rotation is not guaranteed; keep the old refresh token otherwise
                "refresh_token": payload.get("refresh_token") or record.refresh_token,
                "expires_in": int(expires_in) if expires_in is not None else record.expires_in,
                "received_at": self._clock(),
            }
        )
        self.persist()
        logger.info("Access token refreshed for %s", record.domain)
        return self._record
