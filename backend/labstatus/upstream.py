"""Home Assistant client for the single proxied entity."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import ValidationError

from labstatus import config
from labstatus.log_redact import httpx_event_hooks
from labstatus.models import NormalizedState, RawEntityState, format_utc, parse_rfc3339

logger = logging.getLogger("labstatus.upstream")


class UpstreamError(RuntimeError):
    """Base class for failures while fetching the entity state."""

    kind = "UpstreamError"


class UpstreamUnavailable(UpstreamError):
    """The request could not be sent or no response arrived."""

    kind = "UpstreamUnavailable"


class MissingCredentialError(UpstreamUnavailable):
    """Raised instead of sending a request without a bearer token."""

    def __init__(self, env_name: str = "HOMEASSISTANT_TOKEN") -> None:
        self.env_name = env_name
        super().__init__(f"Environment variable {env_name!r} is not set")


class UpstreamReadFailed(UpstreamError):
    kind = "UpstreamReadFailed"


class UpstreamMalformed(UpstreamError):
    kind = "UpstreamMalformed"


class UpstreamTimestampInvalid(UpstreamError):
    kind = "UpstreamTimestampInvalid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_state_url(base_url: str, entity_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/states/{entity_id}"


def parse_entity_state(body: bytes) -> RawEntityState:
    """Decode a response body, keeping whatever fields are usable.

    Raises :class:`UpstreamMalformed` only when the body is not a JSON object.
    """
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise UpstreamMalformed(f"Response body is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise UpstreamMalformed(f"Expected a JSON object, got {type(data).__name__}")
    try:
        return RawEntityState.model_validate(data)
    except ValidationError as exc:
        raise UpstreamMalformed(f"Unusable entity state: {exc.error_count()} errors") from exc


def normalize(raw: RawEntityState, fetched_at: datetime) -> NormalizedState:
    try:
        last_changed = parse_rfc3339(raw.last_changed)
    except ValueError as exc:
        raise UpstreamTimestampInvalid(f"Invalid last_changed {raw.last_changed!r}") from exc
    return NormalizedState(
        state=raw.state,
        last_changed_utc=format_utc(last_changed),
        last_updated_utc=format_utc(fetched_at),
    )


class UpstreamClient:
    """Fetches one entity from the Home Assistant REST API.

    Every failure is raised as an :class:`UpstreamError` subclass so the
    caller can map it to a response without inspecting httpx internals.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        entity_id: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.base_url = config.HOMEASSISTANT_URL if base_url is None else base_url
        self.entity_id = config.HOMEASSISTANT_ENTITY_ID if entity_id is None else entity_id
        self._token = config.HOMEASSISTANT_TOKEN if token is None else token
        self._timeout = httpx.Timeout(config.REQUEST_TIMEOUT_SECONDS if timeout is None else timeout)
        self._transport = transport
        self._clock = clock

    @property
    def url(self) -> str:
        return build_state_url(self.base_url, self.entity_id)

    def _headers(self) -> dict[str, str]:
        token = (self._token or "").strip()
        if not token:
            logger.warning("HOMEASSISTANT_TOKEN is not set; refusing unauthenticated request")
            raise MissingCredentialError()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def fetch(self) -> NormalizedState:
        headers = self._headers()

        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            event_hooks=httpx_event_hooks(),
        ) as client:
            request = client.build_request("GET", self.url, headers=headers)
            try:
                response = await client.send(request, stream=True)
            except httpx.HTTPError as exc:
                logger.warning("Error sending request to %s (%s)", self.entity_id, exc.__class__.__name__)
                raise UpstreamUnavailable(f"Request to Home Assistant failed: {exc.__class__.__name__}") from exc

            try:
                body = await response.aread()
            except httpx.HTTPError as exc:
                logger.warning("Error reading response for %s (%s)", self.entity_id, exc.__class__.__name__)
                raise UpstreamReadFailed(f"Reading Home Assistant response failed: {exc.__class__.__name__}") from exc
            finally:
                await response.aclose()

        fetched_at = self._clock()
        if not response.is_success:
            logger.warning("Home Assistant answered %d for %s", response.status_code, self.entity_id)

        raw = parse_entity_state(body)
        state = normalize(raw, fetched_at)
        logger.info("Got response for %s at %s", raw.entity_id or self.entity_id, state.last_updated_utc)
        return state
