"""Error taxonomy shared by the client, store, pipeline and driver surfaces."""

from typing import Optional


class BatcherError(Exception):
    """Base class for all b24-deal-batcher errors."""


class ConfigurationError(BatcherError):
    """No usable credential record, or required settings are missing."""


class AuthError(BatcherError):
    """Access token expired and cannot be refreshed."""


class MissingRefreshCredentialsError(AuthError, ConfigurationError):
    """Refresh needed but client id / client secret were not supplied."""


class RemoteError(BatcherError):
    """Transport failure, empty response, or provider-reported error."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        description: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.description = description
        self.status_code = status_code

    @classmethod
    def from_payload(cls, payload: dict, status_code: Optional[int] = None) -> "RemoteError":
        """Build from a Bitrix `error` / `error_description` body."""
        code = str(payload.get("error") or "")
        description = str(payload.get("error_description") or "")
        return cls(
            f"{code}: {description}" if description else code,
            code=code,
            description=description,
            status_code=status_code,
        )


class ValidationError(BatcherError):
    """Malformed user-supplied selection (bad index, bad number, bad field type)."""
