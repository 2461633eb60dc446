"""Desired-state cache.

Holds the Zone and Record custom resources delivered by the watch source and
turns them into per-zone snapshots of desired records. Writers (the event
dispatcher) and readers (reconciliation workers) are synchronised with a
reader/writer lock, and every read hands out immutable copies so a pass never
sees a half-applied event.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from .errors import ValidationError
from .models import (
    IGNORED_TYPES,
    DesiredRecord,
    ManagedScope,
    RecordType,
    ResourceRef,
    Zone,
    canonical_name,
    compose_name,
    relative_name,
    sort_records,
    validate_ttl,
)

logger = logging.getLogger(__name__)

MANAGED_NAMES_ANNOTATION = "cloudflare.kubi.zone/managed-names"


# =============================================================================
# Resources
# =============================================================================


@dataclass(frozen=True)
class ZoneResource:
    """The fields of a Zone custom resource this controller reads."""

    ref: ResourceRef
    domain_name: str
    parent_key: Optional[str] = None
    status_fqdn: str = ""
    managed_names: Optional[Tuple[str, ...]] = None

    @property
    def key(self) -> str:
        return self.ref.key


@dataclass(frozen=True)
class RecordResource:
    """The fields of a Record custom resource this controller reads."""

    ref: ResourceRef
    domain_name: str
    type: str
    rdata: str
    ttl: Optional[int] = None
    zone_key: Optional[str] = None

    @property
    def key(self) -> str:
        return self.ref.key


def _metadata_ref(obj: Dict[str, Any]) -> ResourceRef:
    metadata = obj.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise ValidationError(f"resource without metadata.name: {obj}")
    return ResourceRef(
        namespace=str(metadata.get("namespace") or "default"),
        name=str(name),
        resource_version=str(metadata.get("resourceVersion") or ""),
    )


def _zone_ref_key(spec: Dict[str, Any], namespace: str) -> Optional[str]:
    zone_ref = spec.get("zoneRef")
    if not isinstance(zone_ref, dict) or not zone_ref.get("name"):
        return None
    return f"{zone_ref.get('namespace') or namespace}/{zone_ref['name']}"


def _parse_patterns(value: Any) -> Optional[Tuple[str, ...]]:
    if not isinstance(value, str):
        return None
    patterns = tuple(p.strip() for p in value.split(",") if p.strip())
    return patterns or None


def parse_zone(obj: Dict[str, Any]) -> ZoneResource:
    """Build a ZoneResource from a raw `kubi.zone/v1alpha1` Zone object."""
    ref = _metadata_ref(obj)
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    return ZoneResource(
        ref=ref,
        domain_name=str(spec.get("domainName") or ""),
        parent_key=_zone_ref_key(spec, ref.namespace),
        status_fqdn=str(status.get("fqdn") or ""),
        managed_names=_parse_patterns(annotations.get(MANAGED_NAMES_ANNOTATION)),
    )


def parse_record(obj: Dict[str, Any]) -> RecordResource:
    """Build a RecordResource from a raw `kubi.zone/v1alpha1` Record object."""
    ref = _metadata_ref(obj)
    spec = obj.get("spec") or {}
    return RecordResource(
        ref=ref,
        domain_name=str(spec.get("domainName") or ""),
        type=str(spec.get("type") or ""),
        rdata=str(spec.get("rdata") or ""),
        ttl=spec.get("ttl"),
        zone_key=_zone_ref_key(spec, ref.namespace),
    )


# =============================================================================
# Events
# =============================================================================


class EventKind(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    # Full relist of one resource kind, e.g. after the watch expired.
    SYNCED = "SYNCED"


@dataclass(frozen=True)
class WatchEvent:
    kind: EventKind
    resource: Any = None
    resources: Tuple[Any, ...] = ()
    resource_kind: str = ""


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True)
class InvalidRecord:
    ref: ResourceRef
    error: ValidationError


@dataclass(frozen=True)
class ZoneSnapshot:
    """Consistent view of one zone's desired state."""

    key: str
    ref: ResourceRef
    zone: Optional[Zone] = None
    desired: Tuple[DesiredRecord, ...] = ()
    invalid: Tuple[InvalidRecord, ...] = ()
    held: FrozenSet[Tuple[str, RecordType]] = field(default_factory=frozenset)
    error: Optional[ValidationError] = None


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def reading(self) -> "_Guard":
        return _Guard(self.acquire_read, self.release_read)

    def writing(self) -> "_Guard":
        return _Guard(self.acquire_write, self.release_write)


class _Guard:
    def __init__(self, enter, leave):
        self._enter = enter
        self._leave = leave

    def __enter__(self) -> None:
        self._enter()

    def __exit__(self, *exc: Any) -> None:
        self._leave()


# =============================================================================
# Cache
# =============================================================================


class DesiredStateCache:
    def __init__(self, *, default_scope: Optional[ManagedScope] = None):
        self._default_scope = default_scope or ManagedScope()
        self._zones: Dict[str, ZoneResource] = {}
        self._records: Dict[str, RecordResource] = {}
        self._lock = ReadWriteLock()

    # -- writes ------------------------------------------------------------

    def replace_all(
        self,
        zones: Optional[Iterable[ZoneResource]] = None,
        records: Optional[Iterable[RecordResource]] = None,
    ) -> Set[str]:
        """Replace the cached resources of the given kinds with a full listing.

        Returns every zone key present before or after the replacement.
        """
        with self._lock.writing():
            before = set(self._zones)
            if zones is not None:
                self._zones = {z.key: z for z in zones}
            if records is not None:
                self._records = {r.key: r for r in records}
            return before | set(self._zones)

    def apply(self, event: WatchEvent) -> Set[str]:
        """Apply a watch event. Returns the zone keys whose desired state changed."""
        if event.kind is EventKind.SYNCED:
            if event.resource_kind == "Zone":
                return self.replace_all(zones=event.resources)
            return self.replace_all(records=event.resources)

        resource = event.resource
        if isinstance(resource, ZoneResource):
            return self._apply_zone(event.kind, resource)
        if isinstance(resource, RecordResource):
            return self._apply_record(event.kind, resource)
        raise TypeError(f"unsupported resource in watch event: {resource!r}")

    def _apply_zone(self, kind: EventKind, zone: ZoneResource) -> Set[str]:
        with self._lock.writing():
            previous = self._zones.get(zone.key)
            if kind is EventKind.DELETED:
                if previous is None:
                    return set()
            elif previous == zone:
                # Re-delivery or a status-only change; keep the newest resourceVersion.
                self._zones[zone.key] = zone
                return set()

            owners_before = self._record_owners()
            affected = {zone.key} | self._descendants(zone.key)
            fqdn_before = self._fqdn_of(zone.key) if previous is not None else None
            if fqdn_before:
                affected |= self._claimants(fqdn_before)
            if kind is EventKind.DELETED:
                del self._zones[zone.key]
            else:
                self._zones[zone.key] = zone
            affected |= self._descendants(zone.key)
            fqdn_after = self._fqdn_of(zone.key) if kind is not EventKind.DELETED else None
            if fqdn_after:
                affected |= self._claimants(fqdn_after)

            owners_after = self._record_owners()
            for record_key in set(owners_before) | set(owners_after):
                before = owners_before.get(record_key)
                after = owners_after.get(record_key)
                if before != after:
                    affected.update(k for k in (before, after) if k)
            return affected

    def _apply_record(self, kind: EventKind, record: RecordResource) -> Set[str]:
        with self._lock.writing():
            previous = self._records.get(record.key)
            affected: Set[str] = set()
            if previous is not None:
                owner = self._owner_of(previous)
                if owner:
                    affected.add(owner)

            if kind is EventKind.DELETED:
                if previous is None:
                    return set()
                del self._records[record.key]
                return affected

            self._records[record.key] = record
            if previous == record:
                return set()
            owner = self._owner_of(record)
            if owner:
                affected.add(owner)
            return affected

    def clear(self) -> None:
        with self._lock.writing():
            self._zones.clear()
            self._records.clear()

    # -- reads -------------------------------------------------------------

    def zone_keys(self) -> List[str]:
        with self._lock.reading():
            return sorted(self._zones)

    def record_keys(self) -> Set[str]:
        with self._lock.reading():
            return set(self._records)

    def snapshot(self, zone_key: str) -> Optional[ZoneSnapshot]:
        with self._lock.reading():
            zone_resource = self._zones.get(zone_key)
            if zone_resource is None:
                return None
            try:
                fqdn = self._resolve_fqdn(zone_key, ())
            except ValidationError as e:
                return ZoneSnapshot(key=zone_key, ref=zone_resource.ref, error=e)

            # Zones sharing an FQDN would share one provider zone; none of them is reconciled.
            claimants = self._claimants(fqdn) - {zone_key}
            if claimants:
                error = ValidationError(f"fqdn {fqdn} also claimed by {', '.join(sorted(claimants))}")
                return ZoneSnapshot(key=zone_key, ref=zone_resource.ref, error=error)

            scope = self._default_scope
            if zone_resource.managed_names:
                scope = ManagedScope(patterns=zone_resource.managed_names, owner=scope.owner)
            zone = Zone(key=zone_key, fqdn=fqdn, ref=zone_resource.ref, scope=scope)

            owned = [r for r in self._records.values() if self._owner_of(r) == zone_key]

        desired: List[DesiredRecord] = []
        invalid: List[InvalidRecord] = []
        for record in sorted(owned, key=lambda r: r.key):
            if record.type.strip().upper() in IGNORED_TYPES:
                continue
            try:
                built = build_desired(record, fqdn)
            except ValidationError as e:
                invalid.append(InvalidRecord(record.ref, e))
                continue
            if not scope.matches_name(built.name, fqdn):
                error = ValidationError(
                    f"record name '{built.name}' is outside the managed names "
                    f"({', '.join(scope.patterns)}) of zone {fqdn}"
                )
                invalid.append(InvalidRecord(record.ref, error))
                continue
            desired.append(built)

        by_key: Dict[Tuple[str, RecordType], List[DesiredRecord]] = {}
        for record in desired:
            by_key.setdefault(record.key, []).append(record)

        held: Set[Tuple[str, RecordType]] = set()
        unique: List[DesiredRecord] = []
        for key, group in by_key.items():
            if len(group) == 1:
                unique.append(group[0])
                continue
            held.add(key)
            sources = ", ".join(sorted(str(r.source) for r in group))
            for record in group:
                invalid.append(
                    InvalidRecord(
                        record.source,
                        ValidationError(
                            f"duplicate record {record.describe()} declared by {sources}"
                        ),
                    )
                )

        return ZoneSnapshot(
            key=zone_key,
            ref=zone_resource.ref,
            zone=zone,
            desired=tuple(sort_records(unique)),
            invalid=tuple(invalid),
            held=frozenset(held),
        )

    def orphans(self) -> List[InvalidRecord]:
        """Records that do not resolve to any known zone."""
        with self._lock.reading():
            result = []
            for record in sorted(self._records.values(), key=lambda r: r.key):
                if self._owner_of(record) is not None:
                    continue
                if record.zone_key:
                    message = f"record references zone {record.zone_key} which does not exist"
                else:
                    message = f"no zone found for record name '{record.domain_name}'"
                result.append(InvalidRecord(record.ref, ValidationError(message)))
            return result

    # -- helpers (callers hold the lock) ------------------------------------

    def _resolve_fqdn(self, zone_key: str, seen: Tuple[str, ...]) -> str:
        if zone_key in seen:
            chain = " -> ".join(seen + (zone_key,))
            raise ValidationError(f"zone reference cycle: {chain}")
        zone = self._zones.get(zone_key)
        if zone is None:
            raise ValidationError(f"zone {seen[-1] if seen else zone_key} references missing zone {zone_key}")

        name = zone.domain_name.strip()
        if name.endswith("."):
            return canonical_name(name)
        if zone.parent_key:
            parent_fqdn = self._resolve_fqdn(zone.parent_key, seen + (zone_key,))
            return compose_name(name, parent_fqdn)
        if zone.status_fqdn:
            return canonical_name(zone.status_fqdn)
        if name:
            raise ValidationError(
                f"zone {zone_key} has relative domain name '{name}' but no zoneRef"
            )
        raise ValidationError(f"zone {zone_key} does not have a fully qualified domain name")

    def _owner_of(self, record: RecordResource) -> Optional[str]:
        if record.zone_key:
            return record.zone_key if record.zone_key in self._zones else None

        # Without a zoneRef an absolute name belongs to the most specific zone.
        name = record.domain_name.strip()
        if not name.endswith("."):
            return None
        best: Optional[str] = None
        best_len = -1
        for key in self._zones:
            fqdn = self._fqdn_of(key)
            if fqdn is None:
                continue
            if relative_name(name, fqdn) is not None and len(fqdn) > best_len:
                best, best_len = key, len(fqdn)
        return best

    def _fqdn_of(self, zone_key: str) -> Optional[str]:
        try:
            return self._resolve_fqdn(zone_key, ())
        except ValidationError:
            return None

    def _claimants(self, fqdn: str) -> Set[str]:
        """Zone keys resolving to `fqdn`."""
        return {key for key in self._zones if self._fqdn_of(key) == fqdn}

    def _record_owners(self) -> Dict[str, Optional[str]]:
        return {key: self._owner_of(record) for key, record in self._records.items()}

    def _descendants(self, zone_key: str) -> Set[str]:
        found: Set[str] = set()
        frontier = [zone_key]
        while frontier:
            current = frontier.pop()
            for key, zone in self._zones.items():
                if zone.parent_key == current and key not in found and key != zone_key:
                    found.add(key)
                    frontier.append(key)
        return found


def build_desired(record: RecordResource, zone_fqdn: str) -> DesiredRecord:
    """Validate a record resource against its zone and build the desired record."""
    if not record.domain_name.strip():
        raise ValidationError(f"record {record.key} has no domainName")
    name = compose_name(record.domain_name, zone_fqdn)
    if relative_name(name, zone_fqdn) is None:
        raise ValidationError(f"record name '{name}' is outside zone '{zone_fqdn}'")
    record_type = RecordType.parse(record.type)
    value = record_type.validate(record.rdata)
    ttl = validate_ttl(record.ttl)
    return DesiredRecord(name=name, type=record_type, value=value, ttl=ttl, source=record.ref)
