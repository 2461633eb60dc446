"""Diff engine: desired vs. actual records -> reconciliation plan."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from .models import ActualRecord, DesiredRecord, ManagedScope, RecordType, ReconciliationPlan, sort_records

RecordKey = Tuple[str, RecordType]


def compute_plan(
    desired: Iterable[DesiredRecord],
    actual: Iterable[ActualRecord],
    *,
    scope: Optional[ManagedScope] = None,
    zone_fqdn: str = "",
    held: Iterable[RecordKey] = (),
) -> ReconciliationPlan:
    """Compute the minimal plan that turns `actual` into `desired`.

    Records are matched on (name, type). A matched record whose value or TTL
    differs is updated in place under its existing provider ID; it is never
    deleted and recreated. Unmatched actual records are deleted unless they are
    outside `scope` or their key is `held` (desired state for that key is
    currently invalid).

    When the provider holds several records for one key, the first (by ID)
    already equal to the desired record is matched, else the one with the
    lowest ID; the others are deleted.
    """
    held_keys = set(held)

    by_key: Dict[RecordKey, List[ActualRecord]] = {}
    for record in sort_records(list(actual)):
        by_key.setdefault(record.key, []).append(record)

    to_create: List[DesiredRecord] = []
    to_update: List[Tuple[ActualRecord, DesiredRecord]] = []
    matched_ids = set()

    for record in sort_records(list(desired)):
        candidates = by_key.get(record.key)
        if not candidates:
            to_create.append(record)
            continue
        current = next((c for c in candidates if c.matches(record)), candidates[0])
        matched_ids.add(current.id)
        if not current.matches(record):
            to_update.append((current, record))

    to_delete: List[ActualRecord] = []
    for key, records in sorted(by_key.items(), key=lambda item: (item[0][0], item[0][1].value)):
        if key in held_keys:
            continue
        for record in records:
            if record.id in matched_ids:
                continue
            if scope is not None and zone_fqdn and not scope.contains(record, zone_fqdn):
                continue
            to_delete.append(record)

    return ReconciliationPlan(
        to_create=tuple(to_create),
        to_update=tuple(to_update),
        to_delete=tuple(to_delete),
    )
