"""Kubernetes collaborators: config loading, the watch event source and the status writer."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import urllib3
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .cache import EventKind, RecordResource, WatchEvent, ZoneResource, parse_record, parse_zone
from .errors import ConflictError, FatalError, StatusWriteError, ValidationError
from .models import ResourceRef
from .reconciler import HealthState
from .status import StatusWriter

logger = logging.getLogger(__name__)

GROUP = "kubi.zone"
VERSION = "v1alpha1"
ZONE_PLURAL = "zones"
RECORD_PLURAL = "records"

_PLURALS = {"Zone": ZONE_PLURAL, "Record": RECORD_PLURAL}
_PARSERS: Dict[str, Callable[[Dict[str, Any]], Any]] = {"Zone": parse_zone, "Record": parse_record}

# Errors the kubernetes client surfaces when the API server is unreachable.
_CONNECTION_ERRORS = (ApiException, urllib3.exceptions.HTTPError, OSError)


def load_kube_config(in_cluster: Optional[bool] = None) -> None:
    """Load in-cluster config, falling back to the local kubeconfig when allowed."""
    if in_cluster is False:
        config.load_kube_config()
        logger.info("Using local kubeconfig")
        return
    try:
        config.load_incluster_config()
        logger.info("Using in-cluster config")
    except config.ConfigException:
        if in_cluster:
            raise
        config.load_kube_config()
        logger.info("Using local kubeconfig")


# =============================================================================
# Watch Source
# =============================================================================


class KubernetesWatchSource:
    """Lists and watches Zone and Record resources cluster-wide.

    Every change is posted to `events` as a WatchEvent; the consumer owns the
    cache. An expired watch (410 Gone) is answered with a relist delivered as
    a single SYNCED event.
    """

    def __init__(
        self,
        api: client.CustomObjectsApi,
        events: "queue.Queue[Optional[WatchEvent]]",
        *,
        health: Optional[HealthState] = None,
        retry_seconds: float = 5.0,
        watch_timeout_seconds: int = 300,
    ):
        self._api = api
        self._events = events
        self._health = health or HealthState()
        self._retry_seconds = retry_seconds
        self._watch_timeout = watch_timeout_seconds
        self._stopping = threading.Event()
        self._resource_versions: Dict[str, str] = {}
        self._watches: List[watch.Watch] = []
        self._threads: List[threading.Thread] = []

    def _list(self, kind: str) -> Tuple[List[Any], str]:
        response = self._api.list_cluster_custom_object(GROUP, VERSION, _PLURALS[kind])
        items = []
        for obj in response.get("items") or []:
            resource = self._parse(kind, obj)
            if resource is not None:
                items.append(resource)
        resource_version = str((response.get("metadata") or {}).get("resourceVersion") or "")
        return items, resource_version

    def _parse(self, kind: str, obj: Dict[str, Any]) -> Any:
        try:
            return _PARSERS[kind](obj)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed {kind} resource: {e}")
            return None

    def list_all(self) -> Tuple[List[ZoneResource], List[RecordResource]]:
        """Initial full listing. Raises FatalError when the API server cannot be reached."""
        try:
            zones, zones_rv = self._list("Zone")
            records, records_rv = self._list("Record")
        except _CONNECTION_ERRORS as e:
            self._health.mark_watch(False, str(e))
            raise FatalError(f"cannot list kubi.zone resources: {e}") from e
        self._resource_versions = {"Zone": zones_rv, "Record": records_rv}
        self._health.mark_watch(True)
        logger.info(f"Listed {len(zones)} zone(s) and {len(records)} record(s)")
        return zones, records

    def _relist(self, kind: str) -> None:
        items, resource_version = self._list(kind)
        self._resource_versions[kind] = resource_version
        self._events.put(WatchEvent(EventKind.SYNCED, resources=tuple(items), resource_kind=kind))
        logger.info(f"Relisted {len(items)} {kind} resource(s)")

    def _watch_once(self, kind: str) -> None:
        w = watch.Watch()
        self._watches.append(w)
        try:
            stream = w.stream(
                self._api.list_cluster_custom_object,
                GROUP,
                VERSION,
                _PLURALS[kind],
                resource_version=self._resource_versions.get(kind) or None,
                timeout_seconds=self._watch_timeout,
            )
            for event in stream:
                if self._stopping.is_set():
                    return
                event_type = event.get("type")
                obj = event.get("object") or {}
                if event_type == "ERROR":
                    if obj.get("code") == 410:
                        logger.info(f"{kind} watch expired, relisting")
                        self._relist(kind)
                        return
                    raise ApiException(status=obj.get("code"), reason=obj.get("message"))
                resource_version = (obj.get("metadata") or {}).get("resourceVersion")
                if resource_version:
                    self._resource_versions[kind] = str(resource_version)
                if event_type == "BOOKMARK":
                    continue
                try:
                    kind_enum = EventKind(event_type)
                except ValueError:
                    logger.debug(f"Ignoring {kind} watch event of type {event_type!r}")
                    continue
                resource = self._parse(kind, obj)
                if resource is not None:
                    self._events.put(WatchEvent(kind_enum, resource=resource))
        finally:
            self._watches.remove(w)

    def _watch_loop(self, kind: str) -> None:
        while not self._stopping.is_set():
            try:
                self._watch_once(kind)
                self._health.mark_watch(True)
                continue
            except ApiException as e:
                if e.status != 410:
                    self._health.mark_watch(False, f"{kind} watch failed: {e}")
                    self._stopping.wait(self._retry_seconds)
                    continue
            except _CONNECTION_ERRORS as e:
                self._health.mark_watch(False, f"{kind} watch failed: {e}")
                self._stopping.wait(self._retry_seconds)
                continue

            logger.info(f"{kind} watch expired, relisting")
            try:
                self._relist(kind)
            except _CONNECTION_ERRORS as e:
                self._health.mark_watch(False, f"{kind} relist failed: {e}")
                self._stopping.wait(self._retry_seconds)

    def start(self) -> None:
        self._threads = [
            threading.Thread(target=self._watch_loop, args=(kind,), name=f"watch-{kind.lower()}", daemon=True)
            for kind in ("Zone", "Record")
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        for w in list(self._watches):
            w.stop()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []


# =============================================================================
# Status Writer
# =============================================================================


class KubernetesStatusWriter(StatusWriter):
    """Merge-patches `status.<field>` through the status subresource."""

    def __init__(self, api: client.CustomObjectsApi, *, field: str = "cloudflare"):
        self._api = api
        self._field = field

    def _patch(self, plural: str, ref: ResourceRef, status: Dict[str, Any]) -> None:
        body: Dict[str, Any] = {"status": {self._field: status}}
        if ref.resource_version:
            body["metadata"] = {"resourceVersion": ref.resource_version}
        try:
            self._api.patch_namespaced_custom_object_status(
                GROUP, VERSION, ref.namespace, plural, ref.name, body
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(f"{plural} {ref} was modified concurrently") from e
            raise StatusWriteError(f"patching status of {plural} {ref} failed: {e.status} {e.reason}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StatusWriteError(f"patching status of {plural} {ref} failed: {e}") from e

    def write_zone_status(self, ref: ResourceRef, status: Dict[str, Any]) -> None:
        self._patch(ZONE_PLURAL, ref, status)

    def write_record_status(self, ref: ResourceRef, status: Dict[str, Any]) -> None:
        self._patch(RECORD_PLURAL, ref, status)

    def refresh(self, ref: ResourceRef, kind: str) -> ResourceRef:
        plural = _PLURALS[kind]
        try:
            obj = self._api.get_namespaced_custom_object(GROUP, VERSION, ref.namespace, plural, ref.name)
        except ApiException as e:
            raise StatusWriteError(f"reading {plural} {ref} failed: {e.status} {e.reason}") from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise StatusWriteError(f"reading {plural} {ref} failed: {e}") from e
        resource_version = str((obj.get("metadata") or {}).get("resourceVersion") or "")
        return ResourceRef(ref.namespace, ref.name, resource_version)
