"""Persisted OAuth credential record."""

from typing import Optional

from pydantic import BaseModel, Field

# Refresh this long before the provider-reported expiry
EXPIRY_MARGIN_MS = 60_000


class CredentialRecord(BaseModel):
    """
    Flat credential record stored in tokens.json.
    Field names match the file format written by the installer.
    """

    domain: str = Field(..., description="Portal host, e.g. yourportal.bitrix24.ru")
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, description="Token lifetime in seconds")
    received_at: Optional[int] = Field(default=None, description="Issuance time, epoch ms")

    def is_configured(self) -> bool:
        """True iff host and access token are both non-empty."""
        return bool(self.domain and self.domain.strip() and self.access_token and self.access_token.strip())

    def has_expiry(self) -> bool:
        return self.expires_in is not None and self.received_at is not None

    def expires_at_ms(self) -> Optional[int]:
        """Epoch ms at which the token should be treated as expired (margin applied)."""
        if not self.has_expiry():
            return None
        return self.received_at + self.expires_in * 1000 - EXPIRY_MARGIN_MS

    def is_expired(self, now_ms: int) -> bool:
        """Static tokens (no expiry metadata) never expire."""
        deadline = self.expires_at_ms()
        return deadline is not None and now_ms >= deadline
