"""Drupal JSON:API client used by the content migration scripts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from catracker.config import Settings, get_settings
from catracker.services.resilient_call import call_with_retry

logger = logging.getLogger(__name__)

# Drupal's default session cookie lifetime.
COOKIE_LIFETIME = timedelta(days=23)
JSONAPI_MEDIA_TYPE = "application/vnd.api+json"


class SourceAuthError(RuntimeError):
    """Raised when the source CMS login does not yield a session cookie."""


@dataclass(frozen=True)
class SourceSession:
    cookie: str
    expires_at: datetime

    def is_valid(self, now: datetime | None = None) -> bool:
        current = now or datetime.now(UTC)
        return bool(self.cookie) and current < self.expires_at


def _session_cookie_header(set_cookie_headers: list[str]) -> str:
    pairs = []
    for raw in set_cookie_headers:
        pair = raw.split(";", 1)[0].strip()
        if pair.startswith("SSESS") or pair.startswith("SESS"):
            pairs.append(pair)
    return "; ".join(pairs)


class DrupalClient:
    """Authenticated JSON:API reader with retry and re-login on expiry.

    The client owns its session state; callers create one per migration run
    and close it when done.
    """

    def __init__(
        self,
        api_url: str,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout: float = 60.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": JSONAPI_MEDIA_TYPE},
        )
        self._session: SourceSession | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> DrupalClient:
        settings = settings or get_settings()
        if not settings.drupal_username or not settings.drupal_password:
            raise RuntimeError("Missing DRUPAL_USERNAME or DRUPAL_PASSWORD")
        if not settings.drupal_base_url or not settings.drupal_api_url:
            raise RuntimeError("Missing DRUPAL_BASE_URL or DRUPAL_API_URL")
        return cls(
            settings.drupal_api_url,
            settings.drupal_base_url,
            settings.drupal_username,
            settings.drupal_password,
            timeout=settings.source_request_timeout,
            max_attempts=settings.source_max_retries,
            base_delay=settings.source_retry_delay,
            transport=transport,
        )

    @property
    def session(self) -> SourceSession | None:
        return self._session

    async def authenticate(self) -> SourceSession:
        """Log in and return a fresh session handle."""
        logger.info("Authenticating with Drupal at %s", self._base_url)
        response = await self._client.post(
            f"{self._base_url}/user/login",
            params={"_format": "json"},
            json={"name": self._username, "pass": self._password},
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        cookie = _session_cookie_header(response.headers.get_list("set-cookie"))
        if not cookie:
            raise SourceAuthError("Session cookie not found in Drupal login response")
        session = SourceSession(cookie=cookie, expires_at=datetime.now(UTC) + COOKIE_LIFETIME)
        logger.info("Obtained Drupal session cookie, expires %s", session.expires_at.isoformat())
        return session

    def invalidate(self) -> None:
        """Drop the held session so the next request logs in again."""
        if self._session is not None:
            logger.info("Resetting Drupal authentication state")
        self._session = None

    async def _ensure_session(self) -> SourceSession:
        if self._session is None or not self._session.is_valid():
            self._session = await self.authenticate()
        return self._session

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self._api_url}/{path.lstrip('/')}"

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = self._url(path)

        async def _request() -> dict[str, Any]:
            session = await self._ensure_session()
            response = await self._client.get(url, params=params, headers={"Cookie": session.cookie})
            response.raise_for_status()
            return response.json()

        return await call_with_retry(
            _request,
            f"GET {path}",
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
            on_auth_expired=self.invalidate,
            sleep=self._sleep,
        )

    async def fetch_collection(
        self,
        path: str,
        *,
        page_limit: int = 50,
        params: dict[str, Any] | None = None,
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Follow JSON:API ``links.next`` pagination; return ``(data, included)``."""
        records: list[dict[str, Any]] = []
        included: list[dict[str, Any]] = []
        next_url: str | None = path
        next_params: dict[str, Any] | None = {"page[limit]": page_limit, **(params or {})}
        page = 1

        while next_url:
            body = await self.get_json(next_url, params=next_params)
            batch = body.get("data") or []
            records.extend(batch)
            included.extend(body.get("included") or [])
            logger.info("Fetched %s page %d: %d records", path, page, len(batch))

            links = body.get("links") or {}
            next_link = links.get("next") or {}
            next_url = next_link.get("href") if isinstance(next_link, dict) else None
            # The next href already carries its own query string.
            next_params = None
            page += 1

        logger.info("Fetched %d records from %s across %d pages", len(records), path, page - 1)
        return records, included

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DrupalClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
