"""Unit tests for the diff engine."""

from typing import List

from kubizone_cloudflare.diff import compute_plan
from kubizone_cloudflare.models import ActualRecord, DesiredRecord, ManagedScope, RecordType

ZONE = "example.org"


def desired(name: str, value: str, record_type: RecordType = RecordType.A, ttl: int = 300) -> DesiredRecord:
    return DesiredRecord(name, record_type, value, ttl)


def actual(
    record_id: str, name: str, value: str, record_type: RecordType = RecordType.A, ttl: int = 300, **kwargs
) -> ActualRecord:
    return ActualRecord(record_id, name, record_type, value, ttl, **kwargs)


def apply_plan(current: List[ActualRecord], plan) -> List[ActualRecord]:
    """Simulate a provider executing the plan."""
    deleted = {r.id for r in plan.to_delete}
    updated = {a.id: d for a, d in plan.to_update}
    result = []
    for record in current:
        if record.id in deleted:
            continue
        if record.id in updated:
            d = updated[record.id]
            record = ActualRecord(record.id, d.name, d.type, d.value, d.ttl)
        result.append(record)
    for i, d in enumerate(plan.to_create):
        result.append(ActualRecord(f"new{i}", d.name, d.type, d.value, d.ttl))
    return result


class TestComputePlan:
    """Tests for the four basic diff outcomes."""

    def test_missing_record_is_created(self) -> None:
        plan = compute_plan([desired("www.example.org", "1.1.1.1")], [])
        assert [r.name for r in plan.to_create] == ["www.example.org"]
        assert plan.to_update == ()
        assert plan.to_delete == ()

    def test_matching_record_is_left_alone(self) -> None:
        plan = compute_plan(
            [desired("www.example.org", "1.1.1.1")], [actual("r1", "www.example.org", "1.1.1.1")]
        )
        assert plan.is_empty

    def test_changed_value_is_updated_in_place(self) -> None:
        plan = compute_plan(
            [desired("www.example.org", "2.2.2.2")], [actual("r1", "www.example.org", "1.1.1.1")]
        )
        assert len(plan.to_update) == 1
        existing, target = plan.to_update[0]
        assert existing.id == "r1"
        assert target.value == "2.2.2.2"
        assert plan.to_create == ()
        assert plan.to_delete == ()

    def test_changed_ttl_is_updated(self) -> None:
        plan = compute_plan(
            [desired("www.example.org", "1.1.1.1", ttl=60)],
            [actual("r1", "www.example.org", "1.1.1.1", ttl=300)],
        )
        assert [a.id for a, _ in plan.to_update] == ["r1"]

    def test_unmatched_actual_is_deleted(self) -> None:
        plan = compute_plan([], [actual("r1", "old.example.org", "1.1.1.1")])
        assert [r.id for r in plan.to_delete] == ["r1"]

    def test_type_change_is_create_plus_delete(self) -> None:
        plan = compute_plan(
            [desired("www.example.org", "target.example.org", RecordType.CNAME)],
            [actual("r1", "www.example.org", "1.1.1.1")],
        )
        assert [r.type for r in plan.to_create] == [RecordType.CNAME]
        assert [r.id for r in plan.to_delete] == ["r1"]

    def test_unmodelled_fields_do_not_trigger_updates(self) -> None:
        plan = compute_plan(
            [desired("www.example.org", "1.1.1.1")],
            [actual("r1", "www.example.org", "1.1.1.1", proxied=True, comment="hand tuned")],
        )
        assert plan.is_empty


class TestDuplicates:
    """Tests for several provider records under one key."""

    def test_lowest_id_is_kept_and_rest_deleted(self) -> None:
        plan = compute_plan(
            [desired("www.example.org", "1.1.1.1")],
            [
                actual("r2", "www.example.org", "8.8.8.8"),
                actual("r1", "www.example.org", "9.9.9.9"),
            ],
        )
        assert [a.id for a, _ in plan.to_update] == ["r1"]
        assert [r.id for r in plan.to_delete] == ["r2"]

    def test_matching_duplicate_is_kept_without_update(self) -> None:
        """A copy already equal to the desired record wins over a lower ID."""
        plan = compute_plan(
            [desired("www.example.org", "1.1.1.1")],
            [
                actual("r1", "www.example.org", "2.2.2.2"),
                actual("r2", "www.example.org", "1.1.1.1"),
            ],
        )
        assert plan.to_update == ()
        assert plan.to_create == ()
        assert [r.id for r in plan.to_delete] == ["r1"]


class TestSafety:
    """Tests that the plan never touches records it does not own."""

    def test_out_of_scope_records_are_never_deleted(self) -> None:
        scope = ManagedScope(patterns=("app-*",))
        plan = compute_plan(
            [],
            [actual("r1", "app-1.example.org", "1.1.1.1"), actual("r2", "mail.example.org", "2.2.2.2")],
            scope=scope,
            zone_fqdn=ZONE,
        )
        assert [r.id for r in plan.to_delete] == ["r1"]

    def test_unmarked_records_are_never_deleted_when_ownership_required(self) -> None:
        scope = ManagedScope(owner="kubizone-cloudflare")
        plan = compute_plan(
            [],
            [
                actual("r1", "a.example.org", "1.1.1.1", comment="managed-by:kubizone-cloudflare"),
                actual("r2", "b.example.org", "2.2.2.2"),
            ],
            scope=scope,
            zone_fqdn=ZONE,
        )
        assert [r.id for r in plan.to_delete] == ["r1"]

    def test_held_keys_are_not_deleted(self) -> None:
        plan = compute_plan(
            [],
            [actual("r1", "www.example.org", "1.1.1.1")],
            held=[("www.example.org", RecordType.A)],
        )
        assert plan.to_delete == ()

    def test_held_key_does_not_protect_other_types(self) -> None:
        plan = compute_plan(
            [],
            [actual("r1", "www.example.org", "1.1.1.1"), actual("r2", "www.example.org", "txt", RecordType.TXT)],
            held=[("www.example.org", RecordType.A)],
        )
        assert [r.id for r in plan.to_delete] == ["r2"]


class TestConvergence:
    """Tests for plan stability and convergence."""

    def test_plan_is_deterministic(self) -> None:
        wanted = [desired("b.example.org", "2.2.2.2"), desired("a.example.org", "1.1.1.1")]
        live = [actual("r3", "c.example.org", "3.3.3.3"), actual("r1", "a.example.org", "9.9.9.9")]

        first = compute_plan(wanted, live)
        second = compute_plan(list(reversed(wanted)), list(reversed(live)))

        assert first == second
        assert first.plan_hash() == second.plan_hash()
        assert [r.name for r in first.to_create] == ["b.example.org"]

    def test_applying_plan_converges_to_empty_plan(self) -> None:
        wanted = [
            desired("www.example.org", "2.2.2.2"),
            desired("example.org", "v=spf1 -all", RecordType.TXT),
            desired("example.org", "10 mail.example.org", RecordType.MX),
        ]
        live = [
            actual("r1", "www.example.org", "1.1.1.1"),
            actual("r2", "old.example.org", "3.3.3.3"),
            actual("r3", "example.org", "v=spf1 -all", RecordType.TXT),
        ]

        plan = compute_plan(wanted, live)
        after = apply_plan(live, plan)

        assert compute_plan(wanted, after).is_empty

    def test_identity_is_preserved_through_updates(self) -> None:
        live = [actual("r1", "www.example.org", "1.1.1.1")]
        plan = compute_plan([desired("www.example.org", "2.2.2.2")], live)
        after = apply_plan(live, plan)
        assert [r.id for r in after] == ["r1"]
