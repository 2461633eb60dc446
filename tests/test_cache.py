"""Unit tests for the desired-state cache."""

from typing import Optional

import pytest

from kubizone_cloudflare.cache import (
    MANAGED_NAMES_ANNOTATION,
    DesiredStateCache,
    EventKind,
    RecordResource,
    WatchEvent,
    ZoneResource,
    parse_record,
    parse_zone,
)
from kubizone_cloudflare.errors import ValidationError
from kubizone_cloudflare.models import ManagedScope, RecordType, ResourceRef


def zone(name: str, domain: str, parent: Optional[str] = None, **kwargs) -> ZoneResource:
    return ZoneResource(ResourceRef("default", name, "1"), domain, parent_key=parent, **kwargs)


def record(
    name: str,
    domain: str,
    rdata: str = "1.1.1.1",
    record_type: str = "A",
    zone_key: Optional[str] = "default/example",
    ttl: Optional[int] = 300,
) -> RecordResource:
    return RecordResource(ResourceRef("default", name, "1"), domain, record_type, rdata, ttl, zone_key)


def make_cache() -> DesiredStateCache:
    cache = DesiredStateCache()
    cache.replace_all(zones=[zone("example", "example.org.")], records=[])
    return cache


# =============================================================================
# Parsing
# =============================================================================


class TestParsing:
    """Tests for turning raw custom objects into resources."""

    def test_parse_zone(self) -> None:
        obj = {
            "metadata": {
                "name": "sub",
                "namespace": "dns",
                "resourceVersion": "42",
                "annotations": {MANAGED_NAMES_ANNOTATION: "www, app-*"},
            },
            "spec": {"domainName": "sub", "zoneRef": {"name": "example"}},
            "status": {"fqdn": "sub.example.org."},
        }
        parsed = parse_zone(obj)
        assert parsed.key == "dns/sub"
        assert parsed.ref.resource_version == "42"
        assert parsed.parent_key == "dns/example"
        assert parsed.status_fqdn == "sub.example.org."
        assert parsed.managed_names == ("www", "app-*")

    def test_parse_record_defaults_namespace(self) -> None:
        obj = {
            "metadata": {"name": "www"},
            "spec": {
                "domainName": "www",
                "type": "A",
                "rdata": "1.1.1.1",
                "zoneRef": {"name": "example", "namespace": "dns"},
            },
        }
        parsed = parse_record(obj)
        assert parsed.key == "default/www"
        assert parsed.zone_key == "dns/example"
        assert parsed.ttl is None

    def test_parse_without_name_raises(self) -> None:
        with pytest.raises(ValidationError):
            parse_record({"metadata": {}, "spec": {}})


# =============================================================================
# Snapshots
# =============================================================================


class TestSnapshot:
    """Tests for per-zone desired state."""

    def test_relative_record_names_are_composed(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www")))
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("apex", "@", "v=spf1 -all", "TXT")))

        snapshot = cache.snapshot("default/example")

        assert snapshot.zone.fqdn == "example.org"
        assert [(r.name, r.type) for r in snapshot.desired] == [
            ("example.org", RecordType.TXT),
            ("www.example.org", RecordType.A),
        ]
        assert snapshot.desired[1].source == ResourceRef("default", "www")

    def test_unknown_zone_has_no_snapshot(self) -> None:
        assert make_cache().snapshot("default/missing") is None

    def test_invalid_record_is_reported_and_skipped(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("bad", "bad", "not-an-ip")))
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("good", "good")))

        snapshot = cache.snapshot("default/example")

        assert [r.name for r in snapshot.desired] == ["good.example.org"]
        assert [i.ref.name for i in snapshot.invalid] == ["bad"]

    def test_record_outside_zone_is_invalid(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("x", "www.other.org.")))
        snapshot = cache.snapshot("default/example")
        assert snapshot.desired == ()
        assert "outside zone" in str(snapshot.invalid[0].error)

    def test_soa_records_are_ignored(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("soa", "@", "whatever", "SOA")))
        snapshot = cache.snapshot("default/example")
        assert snapshot.desired == ()
        assert snapshot.invalid == ()

    def test_duplicates_are_invalid_and_held(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("one", "www", "1.1.1.1")))
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("two", "www", "2.2.2.2")))

        snapshot = cache.snapshot("default/example")

        assert snapshot.desired == ()
        assert snapshot.held == frozenset({("www.example.org", RecordType.A)})
        assert sorted(i.ref.name for i in snapshot.invalid) == ["one", "two"]

    def test_nested_zone_fqdn_via_zone_ref(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(
            zones=[zone("example", "example.org."), zone("sub", "sub", parent="default/example")],
            records=[record("api", "api", zone_key="default/sub")],
        )
        snapshot = cache.snapshot("default/sub")
        assert snapshot.zone.fqdn == "sub.example.org"
        assert [r.name for r in snapshot.desired] == ["api.sub.example.org"]

    def test_status_fqdn_is_used_without_parent(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(zones=[zone("sub", "sub", status_fqdn="sub.example.org.")])
        assert cache.snapshot("default/sub").zone.fqdn == "sub.example.org"

    def test_zone_reference_cycle_is_an_error(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(zones=[zone("a", "a", parent="default/b"), zone("b", "b", parent="default/a")])
        snapshot = cache.snapshot("default/a")
        assert snapshot.zone is None
        assert "cycle" in str(snapshot.error)

    def test_relative_zone_without_parent_is_an_error(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(zones=[zone("lonely", "lonely")])
        assert cache.snapshot("default/lonely").error is not None

    def test_managed_names_annotation_narrows_scope(self) -> None:
        cache = DesiredStateCache(default_scope=ManagedScope(owner="ctl"))
        cache.replace_all(zones=[zone("example", "example.org.", managed_names=("app-*",))])
        scope = cache.snapshot("default/example").zone.scope
        assert scope.patterns == ("app-*",)
        assert scope.owner == "ctl"

    def test_absolute_record_without_zone_ref_goes_to_most_specific_zone(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(
            zones=[zone("example", "example.org."), zone("sub", "sub.example.org.")],
            records=[record("api", "api.sub.example.org.", zone_key=None)],
        )
        assert cache.snapshot("default/example").desired == ()
        assert [r.name for r in cache.snapshot("default/sub").desired] == ["api.sub.example.org"]

    def test_record_outside_managed_names_is_invalid(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(
            zones=[zone("example", "example.org.", managed_names=("app-*",))],
            records=[record("www", "www"), record("app", "app-1")],
        )

        snapshot = cache.snapshot("default/example")

        assert [r.name for r in snapshot.desired] == ["app-1.example.org"]
        assert [i.ref.name for i in snapshot.invalid] == ["www"]
        assert "outside the managed names" in str(snapshot.invalid[0].error)

    def test_zones_sharing_an_fqdn_are_both_errors(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(
            zones=[zone("example", "example.org."), zone("copy", "example.org.")],
            records=[record("www", "www")],
        )

        for key, other in (("default/example", "default/copy"), ("default/copy", "default/example")):
            snapshot = cache.snapshot(key)
            assert snapshot.zone is None
            assert snapshot.desired == ()
            assert f"also claimed by {other}" in str(snapshot.error)


# =============================================================================
# Events
# =============================================================================


class TestEvents:
    """Tests for which zones an event marks as changed."""

    def test_record_event_affects_owning_zone(self) -> None:
        cache = make_cache()
        assert cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www"))) == {"default/example"}

    def test_identical_redelivery_affects_nothing(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www")))
        assert cache.apply(WatchEvent(EventKind.MODIFIED, resource=record("www", "www"))) == set()

    def test_record_moving_between_zones_affects_both(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(zones=[zone("example", "example.org."), zone("other", "other.org.")])
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www")))

        affected = cache.apply(
            WatchEvent(EventKind.MODIFIED, resource=record("www", "www", zone_key="default/other"))
        )

        assert affected == {"default/example", "default/other"}

    def test_record_deletion(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www")))
        assert cache.apply(WatchEvent(EventKind.DELETED, resource=record("www", "www"))) == {"default/example"}
        assert cache.snapshot("default/example").desired == ()
        assert cache.apply(WatchEvent(EventKind.DELETED, resource=record("www", "www"))) == set()

    def test_zone_change_affects_descendants(self) -> None:
        cache = DesiredStateCache()
        cache.replace_all(
            zones=[zone("example", "example.org."), zone("sub", "sub", parent="default/example")]
        )
        affected = cache.apply(WatchEvent(EventKind.MODIFIED, resource=zone("example", "example.net.")))
        assert affected == {"default/example", "default/sub"}
        assert cache.snapshot("default/sub").zone.fqdn == "sub.example.net"

    def test_zone_deletion_orphans_records(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www")))

        affected = cache.apply(WatchEvent(EventKind.DELETED, resource=zone("example", "example.org.")))

        assert affected == {"default/example"}
        assert cache.zone_keys() == []
        orphans = cache.orphans()
        assert [o.ref.name for o in orphans] == ["www"]
        assert "does not exist" in str(orphans[0].error)

    def test_fqdn_conflict_clears_when_one_zone_is_deleted(self) -> None:
        cache = make_cache()
        assert cache.apply(WatchEvent(EventKind.ADDED, resource=zone("copy", "example.org."))) == {
            "default/copy",
            "default/example",
        }
        assert cache.snapshot("default/example").error is not None

        affected = cache.apply(WatchEvent(EventKind.DELETED, resource=zone("copy", "example.org.")))

        assert "default/example" in affected
        snapshot = cache.snapshot("default/example")
        assert snapshot.error is None
        assert snapshot.zone.fqdn == "example.org"

    def test_synced_event_replaces_one_kind(self) -> None:
        cache = make_cache()
        cache.apply(WatchEvent(EventKind.ADDED, resource=record("www", "www")))

        cache.apply(
            WatchEvent(EventKind.SYNCED, resources=(record("api", "api"),), resource_kind="Record")
        )

        assert cache.zone_keys() == ["default/example"]
        assert [r.name for r in cache.snapshot("default/example").desired] == ["api.example.org"]

    def test_unsupported_resource_raises(self) -> None:
        with pytest.raises(TypeError):
            make_cache().apply(WatchEvent(EventKind.ADDED, resource=object()))

    def test_clear(self) -> None:
        cache = make_cache()
        cache.clear()
        assert cache.zone_keys() == []
