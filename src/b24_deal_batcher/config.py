"""Runtime settings read from the process environment."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

_FALSE_VALUES = ("0", "false", "no", "off")


class Settings(BaseModel):
    """Process-wide configuration. Build with Settings.from_env() or directly in tests."""

    tokens_file: Path = Field(default=Path("tokens.json"), description="Credential record path")

    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    # Out-of-band bootstrap used when no credential file exists yet
    bootstrap_domain: Optional[str] = None
    bootstrap_access_token: Optional[str] = None

    token_url: Optional[str] = Field(
        default=None,
        description="OAuth token endpoint; defaults to https://{domain}/oauth/token/",
    )
    auto_refresh: bool = True
    http_timeout: float = 30.0

    setup_token: Optional[str] = None
    debug: bool = False
    port: int = 3000

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        """Read settings from BITRIX_* / B24_* environment variables."""
        env = os.environ if environ is None else environ

        def _get(key: str) -> Optional[str]:
            value = env.get(key)
            return value.strip() if value and value.strip() else None

        return cls(
            tokens_file=Path(_get("B24_TOKENS_FILE") or "tokens.json"),
            client_id=_get("BITRIX_CLIENT_ID"),
            client_secret=_get("BITRIX_CLIENT_SECRET"),
            bootstrap_domain=_get("BITRIX_DOMAIN"),
            bootstrap_access_token=_get("BITRIX_ACCESS_TOKEN"),
            token_url=_get("BITRIX_OAUTH_TOKEN_URL"),
            auto_refresh=(_get("B24_AUTO_REFRESH") or "1").lower() not in _FALSE_VALUES,
            http_timeout=float(_get("B24_HTTP_TIMEOUT") or 30.0),
            setup_token=_get("SETUP_TOKEN"),
            debug=_get("DEBUG") == "1",
            port=int(_get("PORT") or 3000),
        )

    def token_url_for(self, domain: str) -> str:
        """Token endpoint for a portal domain."""
        return self.token_url or f"https://{domain}/oauth/token/"
