"""Canonical data model shared by the cache, the provider adapter and the diff engine."""

from __future__ import annotations

import fnmatch
import hashlib
import ipaddress
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ValidationError

# Cloudflare's "automatic" TTL.
AUTO_TTL = 1
MIN_TTL = 30
MAX_TTL = 86400

APEX = "@"

MANAGED_BY_PREFIX = "managed-by:"

_HOST_LABEL_RE = re.compile(r"^(?!-)[a-z0-9_*-]{1,63}(?<!-)$")


# =============================================================================
# Name Helpers
# =============================================================================


def canonical_name(name: str) -> str:
    """Lower-case a DNS name and drop the trailing root dot."""
    return name.strip().lower().rstrip(".")


def relative_name(fqdn: str, zone_fqdn: str) -> Optional[str]:
    """Return `fqdn` relative to `zone_fqdn` ("@" for the apex), or None if outside the zone."""
    fqdn = canonical_name(fqdn)
    zone_fqdn = canonical_name(zone_fqdn)
    if fqdn == zone_fqdn:
        return APEX
    suffix = "." + zone_fqdn
    if fqdn.endswith(suffix):
        return fqdn[: -len(suffix)]
    return None


def compose_name(name: str, zone_fqdn: str) -> str:
    """Compose a record name with its zone.

    Names ending in "." are absolute. "@" and "" denote the zone apex.
    """
    stripped = name.strip()
    if stripped.endswith("."):
        return canonical_name(stripped)
    if stripped in ("", APEX):
        return canonical_name(zone_fqdn)
    return canonical_name(f"{stripped}.{zone_fqdn}")


def _canonical_host(value: str) -> str:
    host = canonical_name(value)
    if not host:
        raise ValidationError("hostname must not be empty")
    for label in host.split("."):
        if not _HOST_LABEL_RE.match(label):
            raise ValidationError(f"invalid hostname '{value}'")
    return host


def _parse_int(value: str, what: str, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{what} must be an integer, got '{value}'") from None
    if not low <= number <= high:
        raise ValidationError(f"{what} must be between {low} and {high}, got {number}")
    return number


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


# =============================================================================
# Record Types
# =============================================================================


def _canonical_a(value: str) -> str:
    try:
        return str(ipaddress.IPv4Address(value.strip()))
    except ValueError:
        raise ValidationError(f"invalid IPv4 address '{value}'") from None


def _canonical_aaaa(value: str) -> str:
    try:
        return str(ipaddress.IPv6Address(value.strip()))
    except ValueError:
        raise ValidationError(f"invalid IPv6 address '{value}'") from None


def _canonical_txt(value: str) -> str:
    text = _unquote(value)
    if len(text) > 2048:
        raise ValidationError("TXT content exceeds 2048 characters")
    return text


def _canonical_mx(value: str) -> str:
    parts = value.split()
    if len(parts) != 2:
        raise ValidationError(f"MX value must be '<priority> <host>', got '{value}'")
    priority = _parse_int(parts[0], "MX priority", 0, 65535)
    return f"{priority} {_canonical_host(parts[1])}"


def _canonical_srv(value: str) -> str:
    parts = value.split()
    if len(parts) != 4:
        raise ValidationError(f"SRV value must be '<priority> <weight> <port> <target>', got '{value}'")
    priority = _parse_int(parts[0], "SRV priority", 0, 65535)
    weight = _parse_int(parts[1], "SRV weight", 0, 65535)
    port = _parse_int(parts[2], "SRV port", 0, 65535)
    target = "." if parts[3] == "." else _canonical_host(parts[3])
    return f"{priority} {weight} {port} {target}"


def _canonical_caa(value: str) -> str:
    parts = value.split(None, 2)
    if len(parts) != 3:
        raise ValidationError(f"CAA value must be '<flags> <tag> <value>', got '{value}'")
    flags = _parse_int(parts[0], "CAA flags", 0, 255)
    tag = parts[1].lower()
    if tag not in {"issue", "issuewild", "iodef"}:
        raise ValidationError(f"unsupported CAA tag '{parts[1]}'")
    return f'{flags} {tag} "{_unquote(parts[2])}"'


def _payload_plain(value: str) -> Dict[str, Any]:
    return {"content": value}


def _payload_mx(value: str) -> Dict[str, Any]:
    priority, host = value.split()
    return {"content": host, "priority": int(priority)}


def _payload_srv(value: str) -> Dict[str, Any]:
    priority, weight, port, target = value.split()
    return {
        "data": {
            "priority": int(priority),
            "weight": int(weight),
            "port": int(port),
            "target": target,
        }
    }


def _payload_caa(value: str) -> Dict[str, Any]:
    flags, tag, caa_value = value.split(None, 2)
    return {"data": {"flags": int(flags), "tag": tag, "value": _unquote(caa_value)}}


def _provider_plain(raw: Dict[str, Any]) -> str:
    return str(raw.get("content") or "")


def _provider_mx(raw: Dict[str, Any]) -> str:
    return f"{raw.get('priority', 0)} {raw.get('content') or ''}"


def _provider_srv(raw: Dict[str, Any]) -> str:
    data = raw.get("data")
    if isinstance(data, dict) and "target" in data:
        return f"{data.get('priority', 0)} {data.get('weight', 0)} {data.get('port', 0)} {data['target']}"
    # Cloudflare also reports "<weight> <port> <target>" with a separate priority.
    return f"{raw.get('priority', 0)} {raw.get('content') or ''}"


def _provider_caa(raw: Dict[str, Any]) -> str:
    data = raw.get("data")
    if isinstance(data, dict) and "tag" in data:
        return f"{data.get('flags', 0)} {data['tag']} \"{data.get('value', '')}\""
    return str(raw.get("content") or "")


@dataclass(frozen=True)
class _TypeCodec:
    canonicalize: Callable[[str], str]
    payload: Callable[[str], Dict[str, Any]]
    from_provider: Callable[[Dict[str, Any]], str]


class RecordType(Enum):
    """Closed set of record types this controller manages at Cloudflare."""

    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    TXT = "TXT"
    MX = "MX"
    NS = "NS"
    SRV = "SRV"
    CAA = "CAA"

    @classmethod
    def parse(cls, value: str) -> "RecordType":
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"unsupported record type '{value}'") from None

    @property
    def _codec(self) -> _TypeCodec:
        return _CODECS[self]

    def validate(self, value: str) -> str:
        """Validate `value` and return its canonical form."""
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{self.value} record value must not be empty")
        return self._codec.canonicalize(value)

    def to_provider_payload(self, name: str, value: str, ttl: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.value, "name": name, "ttl": ttl}
        payload.update(self._codec.payload(value))
        return payload

    def from_provider(self, raw: Dict[str, Any]) -> str:
        """Canonical value of a raw provider record of this type."""
        return self.validate(self._codec.from_provider(raw))


_CODECS: Dict[RecordType, _TypeCodec] = {
    RecordType.A: _TypeCodec(_canonical_a, _payload_plain, _provider_plain),
    RecordType.AAAA: _TypeCodec(_canonical_aaaa, _payload_plain, _provider_plain),
    RecordType.CNAME: _TypeCodec(_canonical_host, _payload_plain, _provider_plain),
    RecordType.TXT: _TypeCodec(_canonical_txt, _payload_plain, _provider_plain),
    RecordType.MX: _TypeCodec(_canonical_mx, _payload_mx, _provider_mx),
    RecordType.NS: _TypeCodec(_canonical_host, _payload_plain, _provider_plain),
    RecordType.SRV: _TypeCodec(_canonical_srv, _payload_srv, _provider_srv),
    RecordType.CAA: _TypeCodec(_canonical_caa, _payload_caa, _provider_caa),
}

# Present in zone files, never managed at the provider.
IGNORED_TYPES = frozenset({"SOA"})


def validate_ttl(ttl: Optional[int]) -> int:
    if ttl is None:
        return AUTO_TTL
    if isinstance(ttl, bool) or not isinstance(ttl, int):
        raise ValidationError(f"ttl must be an integer, got {ttl!r}")
    if ttl == AUTO_TTL or MIN_TTL <= ttl <= MAX_TTL:
        return ttl
    raise ValidationError(f"ttl must be {AUTO_TTL} (automatic) or between {MIN_TTL} and {MAX_TTL}, got {ttl}")


# =============================================================================
# Resources and Zones
# =============================================================================


@dataclass(frozen=True)
class ResourceRef:
    """Identity of a custom resource in the cluster."""

    namespace: str
    name: str
    resource_version: str = field(default="", compare=False)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class ManagedScope:
    """Names this controller is authoritative for inside a zone.

    Patterns are fnmatch-style and match the record name relative to the zone
    ("@" for the apex). When `owner` is set, records must also carry the
    `managed-by:<owner>` marker in their comment or tags.
    """

    patterns: Tuple[str, ...] = ("*",)
    owner: Optional[str] = None

    @property
    def marker(self) -> Optional[str]:
        return f"{MANAGED_BY_PREFIX}{self.owner}" if self.owner else None

    def matches_name(self, name: str, zone_fqdn: str) -> bool:
        relative = relative_name(name, zone_fqdn)
        if relative is None:
            return False
        return any(fnmatch.fnmatchcase(relative, pattern.lower()) for pattern in self.patterns)

    def contains(self, record: "ActualRecord", zone_fqdn: str) -> bool:
        if not self.matches_name(record.name, zone_fqdn):
            return False
        marker = self.marker
        if marker is None:
            return True
        return marker in record.tags or marker in (record.comment or "")


@dataclass(frozen=True)
class Zone:
    key: str
    fqdn: str
    ref: ResourceRef
    scope: ManagedScope = field(default_factory=ManagedScope)
    provider_id: Optional[str] = None


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class DesiredRecord:
    """A record as declared by a Record custom resource."""

    name: str
    type: RecordType
    value: str
    ttl: int = AUTO_TTL
    source: Optional[ResourceRef] = field(default=None, compare=False)

    @property
    def key(self) -> Tuple[str, RecordType]:
        return (self.name, self.type)

    def to_provider_payload(self) -> Dict[str, Any]:
        return self.type.to_provider_payload(self.name, self.value, self.ttl)

    def describe(self) -> str:
        return f"{self.name}/{self.type.value}"


@dataclass(frozen=True)
class ActualRecord:
    """A record as currently live at the provider."""

    id: str
    name: str
    type: RecordType
    value: str
    ttl: int = AUTO_TTL
    comment: str = ""
    tags: Tuple[str, ...] = ()
    proxied: Optional[bool] = None

    @property
    def key(self) -> Tuple[str, RecordType]:
        return (self.name, self.type)

    def matches(self, desired: DesiredRecord) -> bool:
        return self.value == desired.value and self.ttl == desired.ttl

    def describe(self) -> str:
        return f"{self.name}/{self.type.value} ({self.id})"


# =============================================================================
# Plan
# =============================================================================


@dataclass(frozen=True)
class ReconciliationPlan:
    to_create: Tuple[DesiredRecord, ...] = ()
    to_update: Tuple[Tuple[ActualRecord, DesiredRecord], ...] = ()
    to_delete: Tuple[ActualRecord, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    def counts(self) -> Dict[str, int]:
        return {
            "create": len(self.to_create),
            "update": len(self.to_update),
            "delete": len(self.to_delete),
        }

    def plan_hash(self) -> str:
        """Stable digest of the plan, used to tell reported plans apart."""
        body = {
            "create": [[r.name, r.type.value, r.value, r.ttl] for r in self.to_create],
            "update": [[a.id, d.name, d.type.value, d.value, d.ttl] for a, d in self.to_update],
            "delete": [[r.id, r.name, r.type.value] for r in self.to_delete],
        }
        encoded = json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


# =============================================================================
# Status
# =============================================================================


class Outcome(Enum):
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


class RecordState(Enum):
    OK = "ok"
    INVALID = "invalid"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ZoneStatus:
    outcome: Outcome
    reconciled_at: datetime = field(default_factory=utcnow)
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0
    held: int = 0
    skipped: int = 0
    plan_hash: str = ""
    provider_zone_id: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastReconciled": _timestamp(self.reconciled_at),
            "outcome": self.outcome.value,
            "operations": {
                "created": self.created,
                "updated": self.updated,
                "deleted": self.deleted,
                "failed": self.failed,
                "held": self.held,
                "skipped": self.skipped,
            },
            "planHash": self.plan_hash,
            "zoneId": self.provider_zone_id,
            "error": self.error,
        }


@dataclass
class RecordStatus:
    state: RecordState
    error: str = ""
    reconciled_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "error": self.error,
            "lastReconciled": _timestamp(self.reconciled_at),
        }


def sort_records(records: List[Any]) -> List[Any]:
    """Deterministic ordering for desired or actual records."""
    return sorted(records, key=lambda r: (r.name, r.type.value, getattr(r, "id", "")))
