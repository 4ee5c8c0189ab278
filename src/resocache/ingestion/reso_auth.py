"""RESO Web API authentication (OAuth 2.0 client credentials).

This module is a small, focused layer in the ingestion data flow:
- `.env` provides `RESO_CLIENT_ID` / `RESO_CLIENT_SECRET` (never commit these).
- We exchange those credentials for a short-lived bearer token via the Trestle token endpoint.
- We cache the token on the broker instance and refresh it when it is (almost) expired.

Concurrency:
The cached token is the only mutable state shared by concurrent callers (API worker threads,
media lookups, ingestion). A lock single-flights the refresh: one thread talks to the token
endpoint while the others wait and then reuse the token it obtained.
"""

from __future__ import annotations

# We use os.getenv to read credentials from the environment (often loaded from a local `.env` file).
import os
# threading.Lock guards the cached token so refreshes are single-flighted across worker threads.
import threading
# We use time.time() for epoch-seconds comparisons (simple and timezone-independent).
import time
# Dataclasses are a lightweight way to bundle a few related fields without boilerplate.
from dataclasses import dataclass
# Optional expresses "this value may be None", which is common for cached state.
from typing import Optional

# httpx is our HTTP client for both the token endpoint and the OData endpoints.
import httpx

# AuthError carries upstream status/body so callers can decide on retries.
from resocache.ingestion.errors import AuthError
# AppConfig typing keeps this module usable with explicit configs (tests) and the global config.
from resocache.settings import AppConfig, get_config


# Trestle documents one hour; used when the token response omits `expires_in`.
DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class OAuthToken:
    """A cached OAuth access token with an absolute expiry time (epoch seconds)."""

    # The bearer token string that will be placed in `Authorization: Bearer ...`.
    access_token: str
    # When the token expires, expressed as epoch seconds (time.time()) for easy comparison.
    expires_at_epoch_seconds: float

    def is_expired(self, buffer_seconds: float = 60) -> bool:
        """Return True when the token is expired or inside the refresh margin."""

        return time.time() >= (self.expires_at_epoch_seconds - buffer_seconds)

    def remaining_seconds(self) -> int:
        return max(0, int(self.expires_at_epoch_seconds - time.time()))


def load_reso_credentials() -> tuple[str, str]:
    """Load RESO credentials from environment variables."""

    # Read and strip values to avoid "invisible" whitespace bugs from copy/paste.
    client_id = os.getenv("RESO_CLIENT_ID", "").strip()
    client_secret = os.getenv("RESO_CLIENT_SECRET", "").strip()
    # Fail fast with an actionable error message so the user can fix setup before ingesting.
    if not client_id or not client_secret:
        raise ValueError(
            "Missing RESO credentials. Set RESO_CLIENT_ID and RESO_CLIENT_SECRET in .env or environment variables."
        )
    return client_id, client_secret


class ResoTokenBroker:
    """Fetch, cache and single-flight refresh a bearer token for the RESO Web API."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.Client,
        scope: str = "api",
        refresh_margin_seconds: float = 60,
        timeout_seconds: int = 30,
    ) -> None:
        # Token endpoint URL is provided by config so it can be changed without code edits.
        self.token_url = token_url
        # Client id/secret are secrets: never log them, and keep them out of repo files.
        self.client_id = client_id
        self.client_secret = client_secret
        # Trestle expects `scope=api` for Web API access.
        self.scope = scope
        # Tokens with less remaining lifetime than this are treated as expired.
        self.refresh_margin_seconds = refresh_margin_seconds
        # We accept an injected http client so the caller can manage lifetime (and close it properly).
        self.http_client = http_client
        self.timeout_seconds = timeout_seconds

        # Cached token state (None until we successfully fetch one).
        self._token: Optional[OAuthToken] = None
        # Held for the whole refresh round-trip; waiters re-check the cache after acquiring it.
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: Optional[AppConfig] = None, http_client: Optional[httpx.Client] = None
    ) -> "ResoTokenBroker":
        """Convenience constructor that reads endpoints/timeouts from config.

        Pitfall:
        If this method creates an `httpx.Client`, the caller should ensure it is eventually closed.
        For long-running apps, prefer passing a shared client owned by a higher-level component.
        """

        resolved_config = config or get_config()
        client_id, client_secret = load_reso_credentials()
        client = http_client or httpx.Client(timeout=resolved_config.reso.request_timeout_seconds)
        return cls(
            token_url=resolved_config.reso.token_url,
            client_id=client_id,
            client_secret=client_secret,
            http_client=client,
            scope=resolved_config.reso.scope,
            refresh_margin_seconds=resolved_config.reso.token_refresh_margin_seconds,
            timeout_seconds=resolved_config.reso.request_timeout_seconds,
        )

    @property
    def cached_token(self) -> Optional[OAuthToken]:
        return self._token

    def get_access_token(self) -> str:
        """Return a valid access token, refreshing it when needed (lazy refresh)."""

        # Fast path without the lock: a fresh token is immutable, so reading it is safe.
        token = self._token
        if token is not None and not token.is_expired(self.refresh_margin_seconds):
            return token.access_token

        with self._lock:
            # Another thread may have refreshed while we waited for the lock.
            token = self._token
            if token is not None and not token.is_expired(self.refresh_margin_seconds):
                return token.access_token
            self._token = self._request_token()
            return self._token.access_token

    def force_refresh(self, stale_token: Optional[str] = None) -> str:
        """Refresh after the upstream rejected `stale_token` (HTTP 401).

        If another thread already replaced `stale_token`, its replacement is returned
        instead of issuing a second token request.
        """

        with self._lock:
            token = self._token
            if (
                stale_token is not None
                and token is not None
                and token.access_token != stale_token
                and not token.is_expired(self.refresh_margin_seconds)
            ):
                return token.access_token
            self._token = self._request_token()
            return self._token.access_token

    def invalidate(self) -> None:
        """Drop the cached token so the next call fetches a new one."""

        with self._lock:
            self._token = None

    def ttl_seconds(self) -> int:
        token = self._token
        return token.remaining_seconds() if token is not None else 0

    def _request_token(self) -> OAuthToken:
        """Request a new token using the client credentials flow.

        Raises `AuthError`; the cached token is left untouched on failure, so a token that
        is still inside its lifetime keeps working for callers that already hold it.
        """

        try:
            # Use form-encoded body fields per the OAuth 2.0 token endpoint convention.
            response = self.http_client.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                },
                headers={"accept": "application/json"},
                # Keep a hard timeout so auth failures don't stall the whole ingestion pipeline.
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Token request failed: {type(exc).__name__}", body=str(exc)) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthError("Token request failed", status_code=response.status_code, body=response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError(
                "Token response is not JSON", status_code=response.status_code, body=response.text
            ) from exc

        # Validate required fields to avoid propagating a broken token through the pipeline.
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthError(
                "Token response is missing 'access_token'", status_code=response.status_code, body=response.text
            )

        expires_in = payload.get("expires_in")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        # Convert "expires in N seconds" into an absolute epoch timestamp for easy expiry checks.
        return OAuthToken(
            access_token=str(access_token), expires_at_epoch_seconds=time.time() + float(expires_in)
        )
