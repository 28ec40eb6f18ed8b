"""
HTTP Remote Store

``RemoteStore`` over a JSON REST API using ``httpx.AsyncClient``.

    GET    /{domain}        -> domain payload
    POST   /{domain}        -> create
    PATCH  /{domain}/{id}   -> update
    DELETE /{domain}/{id}   -> delete

Transport and HTTP failures are translated into the sync error taxonomy so
the mutation coordinator can decide between retry and rollback.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping, Optional

import httpx
import structlog

from ...constants import DEFAULT_ID_FIELD
from ...core.config import Settings
from ...domain.sync.exceptions import (
    ConflictError,
    FatalError,
    NetworkError,
    OperationTimeoutError,
    UnknownDomainError,
    ValidationError,
)
from ...domain.sync.repository_interfaces import RemoteStore
from ...domain.sync.value_objects import MutationKind

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
CONFLICT_STATUS_CODES = frozenset({409, 412})
NOT_FOUND_STATUS_CODE = 404
VALIDATION_STATUS_CODES = frozenset({400, 422})


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, Mapping):
        for key in ("message", "detail", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return response.text or f"HTTP {response.status_code}"


class HttpRemoteStore(RemoteStore):
    """REST-backed remote store."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        id_field: str = DEFAULT_ID_FIELD,
        timeout_seconds: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.id_field = id_field
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout_seconds
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpRemoteStore":
        return cls(
            settings.REMOTE_BASE_URL,
            timeout_seconds=max(
                settings.REMOTE_FETCH_TIMEOUT_SECONDS,
                settings.REMOTE_WRITE_TIMEOUT_SECONDS,
            ),
        )

    async def __aenter__(self) -> "HttpRemoteStore":
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_domain(self, domain: str) -> Any:
        return await self._request("GET", f"/{domain}", domain=domain)

    async def write_entity(self, domain: str, kind: MutationKind, payload: Any) -> Any:
        kind = MutationKind(kind)
        if kind is MutationKind.CREATE:
            return await self._request("POST", f"/{domain}", json=payload)

        entity_id = self._entity_id(payload)
        if kind is MutationKind.UPDATE:
            return await self._request("PATCH", f"/{domain}/{entity_id}", json=payload)
        return await self._request("DELETE", f"/{domain}/{entity_id}")

    def _entity_id(self, payload: Any) -> str:
        if isinstance(payload, Mapping):
            value = payload.get(self.id_field)
        else:
            value = payload
        if value is None or value == "":
            raise ValidationError(f"Missing '{self.id_field}' for entity write")
        return str(value)

    async def _request(
        self, method: str, path: str, domain: Optional[str] = None, **kwargs: Any
    ) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(
                f"{method} {path} timed out", self._client.timeout.read or 0.0
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed", original_error=e) from e

        status = response.status_code
        if status < 400:
            logger.debug("remote_request_completed", method=method, path=path, status=status)
            if status == 204 or not response.content:
                return None
            return response.json()

        message = _error_message(response)
        logger.warning(
            "remote_request_failed", method=method, path=path, status=status, error=message
        )

        if status in RETRYABLE_STATUS_CODES:
            raise NetworkError(
                message,
                status_code=status,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status in CONFLICT_STATUS_CODES:
            raise ConflictError(message, entity_id=path.rsplit("/", 1)[-1])
        if status in VALIDATION_STATUS_CODES:
            raise ValidationError(message)
        if status >= 500:
            raise NetworkError(message, status_code=status)
        if status == NOT_FOUND_STATUS_CODE and domain is not None:
            raise UnknownDomainError(domain)
        raise FatalError(f"{method} {path} returned HTTP {status}: {message}")
