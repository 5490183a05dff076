"""Async HTTP client for the upstream broadcast API and playlist CDN.

WHY: The watch loop needs broadcast metadata, the live stream source, and
raw playlist text, and it needs failures sorted into the few kinds it
reacts to differently: retry later, refresh credentials, or "the stream
is gone". This module hides the HTTP details behind one client class and
that small error taxonomy.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. BroadcastApiClient is an
async context manager - enter it to open the connection pool, exit to close
it. Credentials are pluggable: anything with async headers() and refresh()
works; GuestTokenCredentials implements the guest-token flow. When the
upstream rejects a credential the client schedules a refresh in the
background and fails the current request.

RULES:
- Always use the async context manager (async with BroadcastApiClient(...) as client:)
- Network errors, 5xx and 429 raise TransientFetchError
- 401/403 or upstream error code 239 raise AuthExpiredError and start a
  credential refresh task (never awaited by the failing call)
- 404 on a playlist raises StreamUnavailable (a lifecycle signal)
- Playlist requests carry no upstream credentials
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Protocol, Set, Tuple

import httpx

from space_capture.api.models import BroadcastMetadata, LiveStreamSource
from space_capture.config import (
    AUDIO_SPACE_BY_ID_QUERY_ID,
    TWITTER_API_BASE_URL,
    TWITTER_GUEST_ACTIVATE_URL,
    load_twitter_authorization,
)
from space_capture.core.playlist import get_master_playlist_url, resolve_final_playlist_url

logger = logging.getLogger(__name__)

_BAD_GUEST_TOKEN_CODE = 239
_AUTH_STATUS_CODES = (401, 403)


class FetchError(Exception):
    """Base class for upstream fetch failures.

    RULES:
    - status_code is None for transport-level failures
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class TransientFetchError(FetchError):
    """Network error, 5xx, or any other failure worth retrying after a delay."""


class AuthExpiredError(FetchError):
    """The upstream rejected the credential; a refresh has been scheduled."""


class StreamUnavailable(FetchError):
    """The dynamic playlist returned 404: the stream ended or the host left."""


class Credentials(Protocol):
    async def headers(self) -> Dict[str, str]: ...

    async def refresh(self) -> None: ...


class GuestTokenCredentials:
    """Bearer authorization plus an activated guest token.

    WHY: Anonymous upstream access needs a short-lived guest token next to
    the app bearer token. Tokens expire without notice, so the client must
    be able to re-activate one on demand.

    HOW: headers() activates a token on first use. refresh() POSTs the
    activation endpoint again and swaps the token. An asyncio.Lock
    serialises activations, and callers of headers() that queued behind a
    cold-start activation reuse its token instead of activating again.

    RULES:
    - Every activation failure surfaces as TransientFetchError
    """

    def __init__(
        self,
        authorization: Optional[str] = None,
        activate_url: str = TWITTER_GUEST_ACTIVATE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._authorization = authorization or load_twitter_authorization()
        self._activate_url = activate_url
        self._transport = transport
        self._guest_token: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def guest_token(self) -> Optional[str]:
        return self._guest_token

    async def headers(self) -> Dict[str, str]:
        if self._guest_token is None:
            async with self._lock:
                # Another caller may have activated a token while we waited
                if self._guest_token is None:
                    await self._activate()
        return {
            "authorization": self._authorization,
            "x-guest-token": self._guest_token or "",
        }

    async def refresh(self) -> None:
        async with self._lock:
            await self._activate()

    async def _activate(self) -> None:
        """POST the activation endpoint and store the new guest token.

        Raises:
            TransientFetchError: Network failure, non-200, or unusable body.
        """
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
                resp = await client.post(
                    self._activate_url,
                    headers={"authorization": self._authorization},
                )
        except httpx.HTTPError as exc:
            raise TransientFetchError("Guest token activation failed: {}".format(exc)) from exc
        if resp.status_code != 200:
            raise TransientFetchError(
                "Guest token activation failed: {}".format(resp.text[:200]),
                resp.status_code,
            )
        try:
            token = resp.json()["guest_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TransientFetchError(
                "Guest token activation returned no token: {}".format(resp.text[:200]),
                resp.status_code,
            ) from exc
        self._guest_token = token
        logger.debug("Guest token refreshed")


class BroadcastApiClient:
    """Async client for broadcast metadata, stream sources, and playlists.

    WHY: Gives the lifecycle tracker and the playlist monitors one typed
    interface with a uniform error taxonomy, independent of HTTP details.

    HOW: Wraps httpx.AsyncClient. Upstream API calls add credential headers
    and classify failures; playlist calls are plain GETs against the CDN.

    RULES:
    - Use as: async with BroadcastApiClient(credentials) as client: ...
    - base_url defaults to TWITTER_API_BASE_URL from config
    - transport is injectable (httpx.MockTransport in tests)
    """

    def __init__(
        self,
        credentials: Credentials,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self._credentials = credentials
        self._base_url = (base_url or TWITTER_API_BASE_URL).rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    async def __aenter__(self) -> "BroadcastApiClient":
        self._client = httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        for task in list(self._background):
            task.cancel()
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the active httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError(
                "BroadcastApiClient must be used as an async context manager: "
                "async with BroadcastApiClient(...) as client: ..."
            )
        return self._client

    # ------------------------------------------------------------------
    # Upstream API
    # ------------------------------------------------------------------

    async def fetch_metadata(self, broadcast_id: str) -> BroadcastMetadata:
        """Fetch the current metadata snapshot of a broadcast.

        Raises:
            TransientFetchError: Network failure, 5xx, or unusable payload.
            AuthExpiredError: Credential rejected (refresh scheduled).
        """
        variables = {
            "id": broadcast_id,
            "isMetatagsQuery": False,
            "withReplays": True,
        }
        url = "{}/graphql/{}/AudioSpaceById".format(self._base_url, AUDIO_SPACE_BY_ID_QUERY_ID)
        data = await self._get_json(
            "fetch_metadata", url, params={"variables": json.dumps(variables)}
        )
        audio_space = (data.get("data") or {}).get("audioSpace") or {}
        if not audio_space.get("metadata"):
            raise TransientFetchError(
                "Broadcast {} metadata missing from response".format(broadcast_id)
            )
        return BroadcastMetadata.from_dict(audio_space)

    async def fetch_live_stream_source(self, media_key: str) -> LiveStreamSource:
        """Resolve the dynamic playlist location for a broadcast's media key."""
        url = "{}/1.1/live_video_stream/status/{}".format(self._base_url, media_key)
        data = await self._get_json("fetch_live_stream_source", url)
        source = LiveStreamSource.from_dict(data)
        if not source.location:
            raise TransientFetchError("Live stream source has no playlist location")
        return source

    # ------------------------------------------------------------------
    # Playlists
    # ------------------------------------------------------------------

    async def fetch_text(self, url: str) -> str:
        """GET a playlist as text.

        Raises:
            StreamUnavailable: HTTP 404.
            TransientFetchError: Any other failure.
        """
        client = self._ensure_client()
        try:
            resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise TransientFetchError("GET {} failed: {}".format(url, exc))
        if resp.status_code == 404:
            raise StreamUnavailable("Playlist not found: {}".format(url), 404)
        if resp.status_code != 200:
            raise TransientFetchError(
                "GET {} returned {}".format(url, resp.status_code), resp.status_code
            )
        return resp.text

    async def fetch_final_playlist_url(self, dynamic_url: str) -> str:
        """Resolve the post-broadcast playlist URL from a dynamic playlist URL."""
        final_url, _ = await self._resolve_final(dynamic_url)
        return final_url

    async def fetch_final_playlist(self, dynamic_url: str) -> Tuple[str, str]:
        """Return (final playlist URL, final playlist text)."""
        final_url, _ = await self._resolve_final(dynamic_url)
        text = await self.fetch_text(final_url)
        return final_url, text

    async def _resolve_final(self, dynamic_url: str) -> Tuple[str, str]:
        master_url = get_master_playlist_url(dynamic_url)
        master_text = await self.fetch_text(master_url)
        final_url = resolve_final_playlist_url(master_url, master_text)
        if final_url is None:
            raise TransientFetchError("Master playlist lists no final playlist: " + master_url)
        return final_url, master_text

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_json(
        self,
        name: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        client = self._ensure_client()
        request_id = uuid.uuid4().hex
        headers = await self._credentials.headers()

        logger.debug("--> %s [%s]", name, request_id)
        try:
            resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.error("%s [%s]: %s", name, request_id, exc)
            raise TransientFetchError("{} failed: {}".format(name, exc))
        logger.debug("<-- %s [%s] %s", name, request_id, resp.status_code)

        try:
            data: Dict[str, Any] = resp.json()
        except ValueError:
            # Non-JSON bodies (HTML error pages) are judged by status code alone
            data = {}

        if resp.status_code in _AUTH_STATUS_CODES or _has_error_code(data, _BAD_GUEST_TOKEN_CODE):
            logger.error(
                "%s [%s]: credential rejected (%s)", name, request_id, resp.status_code
            )
            self._schedule_credential_refresh()
            raise AuthExpiredError(
                "{} rejected credentials".format(name), resp.status_code
            )

        if resp.status_code != 200:
            logger.error("%s [%s]: HTTP %s %s", name, request_id, resp.status_code, resp.text[:200])
            raise TransientFetchError(
                "{} returned {}".format(name, resp.status_code), resp.status_code
            )
        return data

    def _schedule_credential_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        task = asyncio.ensure_future(self._credentials.refresh())
        self._refresh_task = task
        self._background.add(task)
        task.add_done_callback(self._on_refresh_done)

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Credential refresh failed: %s", exc)
        else:
            logger.debug("Credential refresh succeeded")


def _has_error_code(data: Dict[str, Any], code: int) -> bool:
    errors = data.get("errors") if isinstance(data, dict) else None
    if not isinstance(errors, list):
        return False
    return any(isinstance(e, dict) and e.get("code") == code for e in errors)
