"""Cloudflare DNS provider adapter.

Wraps the Cloudflare v4 REST API (zones and dns_records endpoints) and
normalizes its record representation into the canonical model. Every failure
is classified into the error taxonomy in `errors.py`:

    connection error, timeout, 5xx    -> TransientError
    429                               -> RateLimitedError (retry_after from Retry-After)
    401, 403                          -> AuthenticationError
    404                               -> NotFoundError
    other 4xx, "success": false       -> PermanentError
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterator, List, Optional

import requests

from .errors import (
    AuthenticationError,
    NotFoundError,
    PermanentError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from .models import (
    IGNORED_TYPES,
    MANAGED_BY_PREFIX,
    ActualRecord,
    DesiredRecord,
    RecordType,
    canonical_name,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cloudflare.com/client/v4"


@dataclass(frozen=True)
class ProviderZone:
    """A zone as known to the provider account."""

    id: str
    name: str


# =============================================================================
# Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for the record CRUD surface the reconciler needs."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def verify_token(self) -> bool:
        """Check that the configured credentials are accepted."""
        pass

    @abstractmethod
    def list_zones(self) -> List[ProviderZone]:
        pass

    @abstractmethod
    def list_records(self, zone_id: str) -> List[ActualRecord]:
        """Return every supported record in the zone, all pages drained."""
        pass

    @abstractmethod
    def create_record(self, zone_id: str, record: DesiredRecord) -> ActualRecord:
        pass

    @abstractmethod
    def update_record(self, zone_id: str, record_id: str, record: DesiredRecord) -> ActualRecord:
        pass

    @abstractmethod
    def delete_record(self, zone_id: str, record_id: str) -> None:
        pass


# =============================================================================
# Helpers
# =============================================================================


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
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
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _error_details(body: Any) -> tuple[str, List[int]]:
    if not isinstance(body, dict):
        return "", []
    errors = body.get("errors") or []
    messages = []
    codes = []
    for error in errors:
        if not isinstance(error, dict):
            continue
        code = error.get("code")
        if isinstance(code, int):
            codes.append(code)
        messages.append(f"{code}: {error.get('message', '')}")
    return ", ".join(messages), codes


def parse_record(raw: Dict[str, Any]) -> Optional[ActualRecord]:
    """Normalize a Cloudflare record object. Returns None for unmanaged types."""
    raw_type = str(raw.get("type") or "").upper()
    if raw_type in IGNORED_TYPES:
        return None
    try:
        record_type = RecordType(raw_type)
    except ValueError:
        logger.debug(f"Skipping record {raw.get('id')} of unsupported type {raw_type!r}")
        return None

    record_id = raw.get("id")
    name = raw.get("name")
    if not isinstance(record_id, str) or not isinstance(name, str):
        logger.warning(f"Skipping malformed record: {raw}")
        return None

    try:
        value = record_type.from_provider(raw)
    except ValidationError as e:
        logger.warning(f"Skipping record {record_id} ({name}/{raw_type}) with unrecognised content: {e}")
        return None

    tags = raw.get("tags") or []
    return ActualRecord(
        id=record_id,
        name=canonical_name(name),
        type=record_type,
        value=value,
        ttl=int(raw.get("ttl") or 1),
        comment=str(raw.get("comment") or ""),
        tags=tuple(str(t) for t in tags),
        proxied=raw.get("proxied"),
    )


# =============================================================================
# Cloudflare Client
# =============================================================================


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare implementation of the provider adapter."""

    DEFAULT_PAGE_SIZE = 100

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        controller_name: str = "",
    ):
        self._url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._page_size = page_size
        self._controller_name = controller_name
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            }
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    # -- low level ---------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._url}{path}"
        try:
            response = self._session.request(
                method, url, params=params, json=payload, timeout=self._timeout
            )
        except requests.exceptions.Timeout as e:
            raise TransientError(f"{method} {path} timed out after {self._timeout}s: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            body = None

        status = response.status_code
        detail, codes = _error_details(body)
        message = f"{method} {path} returned {status}" + (f": {detail}" if detail else "")

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitedError(message, retry_after=retry_after, status_code=status, codes=codes)
        if status >= 500:
            raise TransientError(message, status_code=status, codes=codes)
        if status in (401, 403):
            raise AuthenticationError(message, status_code=status, codes=codes)
        if status == 404:
            raise NotFoundError(message, status_code=status, codes=codes)
        if status >= 400:
            raise PermanentError(message, status_code=status, codes=codes)

        if not isinstance(body, dict):
            raise TransientError(f"{method} {path} returned a non-JSON body", status_code=status)
        if not body.get("success", False):
            raise PermanentError(message, status_code=status, codes=codes)
        return body

    def _paginate(self, path: str) -> Iterator[Dict[str, Any]]:
        page = 1
        while True:
            body = self._request("GET", path, params={"page": page, "per_page": self._page_size})
            for item in body.get("result") or []:
                if isinstance(item, dict):
                    yield item
            info = body.get("result_info") or {}
            total_pages = info.get("total_pages") or 1
            if page >= total_pages:
                return
            page += 1

    # -- DNSProvider -------------------------------------------------------

    def verify_token(self) -> bool:
        try:
            self._request("GET", "/user/tokens/verify")
        except AuthenticationError as e:
            logger.error(f"{self.name} rejected the API token: {e}")
            return False
        except TransientError as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False
        except PermanentError as e:
            logger.error(f"{self.name} token verification failed: {e}")
            return False
        logger.info(f"{self.name} connection successful")
        return True

    def list_zones(self) -> List[ProviderZone]:
        zones: List[ProviderZone] = []
        for raw in self._paginate("/zones"):
            zone_id = raw.get("id")
            name = raw.get("name")
            if not isinstance(zone_id, str) or not isinstance(name, str):
                logger.warning(f"Skipping malformed zone: {raw}")
                continue
            zones.append(ProviderZone(id=zone_id, name=canonical_name(name)))
        return zones

    def list_records(self, zone_id: str) -> List[ActualRecord]:
        records: List[ActualRecord] = []
        for raw in self._paginate(f"/zones/{zone_id}/dns_records"):
            record = parse_record(raw)
            if record is not None:
                records.append(record)
        return records

    def _record_from_response(self, body: Dict[str, Any], record: DesiredRecord) -> ActualRecord:
        result = body.get("result")
        parsed = parse_record(result) if isinstance(result, dict) else None
        if parsed is None:
            raise PermanentError(f"unexpected response while writing {record.describe()}: {result!r}")
        return parsed

    def create_record(self, zone_id: str, record: DesiredRecord) -> ActualRecord:
        payload = record.to_provider_payload()
        if self._controller_name:
            payload["comment"] = f"{MANAGED_BY_PREFIX}{self._controller_name}"
        body = self._request("POST", f"/zones/{zone_id}/dns_records", payload=payload)
        created = self._record_from_response(body, record)
        logger.info(f"Created DNS record {record.describe()} -> {record.value} ({created.id})")
        return created

    def update_record(self, zone_id: str, record_id: str, record: DesiredRecord) -> ActualRecord:
        # PATCH leaves fields we do not model (proxied, comment, tags) untouched.
        body = self._request(
            "PATCH",
            f"/zones/{zone_id}/dns_records/{record_id}",
            payload=record.to_provider_payload(),
        )
        updated = self._record_from_response(body, record)
        logger.info(f"Updated DNS record {record.describe()} -> {record.value} ({record_id})")
        return updated

    def delete_record(self, zone_id: str, record_id: str) -> None:
        self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        logger.info(f"Deleted DNS record {record_id} in zone {zone_id}")
