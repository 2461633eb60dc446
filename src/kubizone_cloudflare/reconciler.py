"""Reconciliation control loop.

One pass for one zone walks the phases

    IDLE -> FETCHING -> DIFFING -> APPLYING -> REPORTING -> IDLE

and ends in BACKING_OFF instead of IDLE after a transient provider failure.
Passes are driven by the work queue: watch events and the periodic resync
both enqueue zone keys, and a bounded pool of worker threads drains it.
"""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .cache import DesiredStateCache, InvalidRecord, WatchEvent, ZoneSnapshot
from .cloudflare import DNSProvider, ProviderZone
from .diff import compute_plan
from .errors import AuthenticationError, PermanentError, TransientError
from .fetcher import ActualStateFetcher
from .models import (
    Outcome,
    ReconciliationPlan,
    RecordState,
    RecordStatus,
    ResourceRef,
    Zone,
    ZoneStatus,
)
from .status import StatusReporter
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


# =============================================================================
# Enums and Policies
# =============================================================================


class ZonePhase(Enum):
    IDLE = "Idle"
    FETCHING = "Fetching"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    REPORTING = "Reporting"
    BACKING_OFF = "BackingOff"


class ReconcileMode(Enum):
    """`sync` applies deletes; `upsert` only creates and updates."""

    SYNC = "sync"
    UPSERT = "upsert"


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    max_seconds: float = 300.0

    def delay(self, failures: int, rng: random.Random) -> float:
        """Exponential backoff capped at `max_seconds`, with jitter in [50%, 100%]."""
        exponent = max(0, failures - 1)
        # Cap the exponent so large failure counts cannot overflow.
        raw = min(self.max_seconds, self.base_seconds * (2 ** min(exponent, 32)))
        return raw * rng.uniform(0.5, 1.0)


class HealthState:
    """Process-level health signal for fatal collaborator failures."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.watch_ok = True
        self.provider_ok = True
        self.last_error = ""

    def mark_watch(self, ok: bool, error: str = "") -> None:
        with self._lock:
            if self.watch_ok and not ok:
                logger.error(f"Watch source unavailable: {error}")
            elif not self.watch_ok and ok:
                logger.info("Watch source recovered")
            self.watch_ok = ok
            if error:
                self.last_error = error

    def mark_provider(self, ok: bool, error: str = "") -> None:
        with self._lock:
            if self.provider_ok and not ok:
                logger.error(f"Provider credentials rejected: {error}")
            elif not self.provider_ok and ok:
                logger.info("Provider credentials accepted again")
            self.provider_ok = ok
            if error:
                self.last_error = error

    @property
    def healthy(self) -> bool:
        with self._lock:
            return self.watch_ok and self.provider_ok


# =============================================================================
# Zone Directory
# =============================================================================


class ZoneDirectory:
    """Maps zone FQDNs to provider zone IDs, refreshing the account's zone list periodically."""

    def __init__(
        self,
        provider: DNSProvider,
        *,
        refresh_seconds: float = 300.0,
        miss_refresh_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._provider = provider
        self._refresh_seconds = refresh_seconds
        self._miss_refresh_seconds = miss_refresh_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._zones: Dict[str, ProviderZone] = {}
        self._refreshed_at: Optional[float] = None

    def _refresh(self) -> None:
        zones = self._provider.list_zones()
        self._zones = {z.name: z for z in zones}
        self._refreshed_at = self._clock()
        logger.info(f"Loaded {len(zones)} zone(s) from {self._provider.name}")

    def lookup(self, fqdn: str) -> Optional[ProviderZone]:
        with self._lock:
            now = self._clock()
            if self._refreshed_at is None or now - self._refreshed_at >= self._refresh_seconds:
                self._refresh()
            zone = self._zones.get(fqdn)
            if zone is None and self._clock() - self._refreshed_at >= self._miss_refresh_seconds:
                self._refresh()
                zone = self._zones.get(fqdn)
            if zone is None:
                logger.warning(
                    f"{fqdn} does not match any zones in {', '.join(sorted(self._zones)) or '(none)'}"
                )
            return zone


# =============================================================================
# Pass Results
# =============================================================================


@dataclass
class ApplyResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    held: int = 0
    skipped: int = 0
    failures: List[Tuple[str, Optional[ResourceRef], PermanentError]] = field(default_factory=list)
    transient: Optional[TransientError] = None
    held_by_failure: bool = False

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass
class PassResult:
    zone_key: str
    outcome: Outcome
    plan: ReconciliationPlan = field(default_factory=ReconciliationPlan)
    applied: ApplyResult = field(default_factory=ApplyResult)
    error: str = ""
    transient: Optional[TransientError] = None
    backoff_seconds: Optional[float] = None


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        *,
        cache: DesiredStateCache,
        provider: DNSProvider,
        reporter: StatusReporter,
        work_queue: WorkQueue,
        directory: Optional[ZoneDirectory] = None,
        mode: ReconcileMode = ReconcileMode.SYNC,
        backoff: Optional[BackoffPolicy] = None,
        health: Optional[HealthState] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.cache = cache
        self.provider = provider
        self.fetcher = ActualStateFetcher(provider)
        self.reporter = reporter
        self.queue = work_queue
        self.directory = directory or ZoneDirectory(provider, clock=clock)
        self.mode = mode
        self.backoff = backoff or BackoffPolicy()
        self.health = health or HealthState()
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._phases: Dict[str, ZonePhase] = {}
        self._failures: Dict[str, int] = {}
        self._record_states: Dict[str, Tuple[RecordState, str]] = {}

    # -- phase bookkeeping --------------------------------------------------

    def phase(self, zone_key: str) -> ZonePhase:
        with self._lock:
            return self._phases.get(zone_key, ZonePhase.IDLE)

    def _set_phase(self, zone_key: str, phase: ZonePhase) -> None:
        with self._lock:
            self._phases[zone_key] = phase
        logger.debug(f"Zone {zone_key}: {phase.value}")

    def failures(self, zone_key: str) -> int:
        with self._lock:
            return self._failures.get(zone_key, 0)

    # -- pass ---------------------------------------------------------------

    def reconcile(self, zone_key: str) -> Optional[PassResult]:
        """Run one reconciliation pass for a zone. Returns None if the zone is gone."""
        snapshot = self.cache.snapshot(zone_key)
        if snapshot is None:
            logger.debug(f"Zone {zone_key} no longer exists, dropping")
            with self._lock:
                self._phases.pop(zone_key, None)
                self._failures.pop(zone_key, None)
            self.queue.forget(zone_key)
            return None

        self._report_invalid(snapshot.invalid)

        if snapshot.error is not None or snapshot.zone is None:
            error = str(snapshot.error)
            logger.warning(f"Zone {zone_key} is invalid: {error}")
            result = PassResult(zone_key=zone_key, outcome=Outcome.FAILED, error=error)
            self._finish(snapshot.ref, result, provider_zone_id="")
            return result

        zone = snapshot.zone
        self._set_phase(zone_key, ZonePhase.FETCHING)
        try:
            provider_zone = self.directory.lookup(zone.fqdn)
            if provider_zone is None:
                result = PassResult(
                    zone_key=zone_key,
                    outcome=Outcome.FAILED,
                    error=f"zone not found in {self.provider.name}: {zone.fqdn}",
                )
                self._finish(zone.ref, result, provider_zone_id="")
                return result
            zone = replace(zone, provider_id=provider_zone.id)
            actual = self.fetcher.fetch(zone)
        except TransientError as e:
            logger.warning(f"Zone {zone.fqdn}: fetching records failed: {e}")
            result = PassResult(zone_key=zone_key, outcome=Outcome.FAILED, error=str(e), transient=e)
            self._finish(zone.ref, result, provider_zone_id=zone.provider_id or "")
            return result
        except PermanentError as e:
            if isinstance(e, AuthenticationError):
                self.health.mark_provider(False, str(e))
            logger.error(f"Zone {zone.fqdn}: fetching records failed: {e}")
            result = PassResult(zone_key=zone_key, outcome=Outcome.FAILED, error=str(e))
            self._finish(zone.ref, result, provider_zone_id=zone.provider_id or "")
            return result

        self.health.mark_provider(True)

        self._set_phase(zone_key, ZonePhase.DIFFING)
        plan = compute_plan(
            snapshot.desired, actual, scope=zone.scope, zone_fqdn=zone.fqdn, held=snapshot.held
        )
        if plan.is_empty:
            logger.debug(f"Zone {zone.fqdn}: up to date ({len(snapshot.desired)} records)")
        else:
            counts = plan.counts()
            logger.info(
                f"Zone {zone.fqdn}: plan {counts['create']} create, "
                f"{counts['update']} update, {counts['delete']} delete"
            )

        self._set_phase(zone_key, ZonePhase.APPLYING)
        applied = self._apply(zone, plan)

        if applied.transient is not None or applied.failed or applied.held_by_failure:
            outcome = Outcome.PARTIAL
        else:
            outcome = Outcome.OK
        errors = [f"{what}: {error}" for what, _, error in applied.failures]
        if applied.transient is not None:
            errors.append(str(applied.transient))
        result = PassResult(
            zone_key=zone_key,
            outcome=outcome,
            plan=plan,
            applied=applied,
            error="; ".join(errors),
            transient=applied.transient,
        )
        self._report_records(snapshot, applied)
        self._finish(zone.ref, result, provider_zone_id=zone.provider_id or "")
        return result

    def _apply(self, zone: Zone, plan: ReconciliationPlan) -> ApplyResult:
        """Apply creates and updates first, deletes last.

        A permanent failure is recorded against its record and the pass goes
        on; deletes sharing a name with a failed create or update are held so
        a swap never leaves the name without any record. A transient failure
        stops further mutations for this pass.
        """
        result = ApplyResult()
        failed_names = set()
        zone_id = zone.provider_id or ""

        def attempt(what: str, source: Optional[ResourceRef], name: str, call) -> bool:
            if result.transient is not None:
                result.skipped += 1
                return False
            try:
                call()
                return True
            except TransientError as e:
                logger.warning(f"Zone {zone.fqdn}: {what} failed, backing off: {e}")
                result.transient = e
                failed_names.add(name)
            except PermanentError as e:
                if isinstance(e, AuthenticationError):
                    self.health.mark_provider(False, str(e))
                logger.error(f"Zone {zone.fqdn}: {what} failed: {e}")
                result.failures.append((what, source, e))
                failed_names.add(name)
            return False

        for desired in plan.to_create:
            logger.info(f"Creating record {desired.describe()} in {zone.fqdn} with value {desired.value}")
            if attempt(
                f"create {desired.describe()}",
                desired.source,
                desired.name,
                lambda d=desired: self.provider.create_record(zone_id, d),
            ):
                result.created += 1

        for current, desired in plan.to_update:
            logger.info(
                f"Updating record {current.describe()} in {zone.fqdn} from {current.value} "
                f"with ttl {current.ttl} => {desired.value} with ttl {desired.ttl}"
            )
            if attempt(
                f"update {current.describe()}",
                desired.source,
                desired.name,
                lambda c=current, d=desired: self.provider.update_record(zone_id, c.id, d),
            ):
                result.updated += 1

        for record in plan.to_delete:
            if self.mode is ReconcileMode.UPSERT:
                logger.info(f"Not deleting {record.describe()}, since controller is running in 'upsert' mode")
                result.held += 1
                continue
            if result.transient is not None:
                result.skipped += 1
                continue
            if record.name in failed_names:
                logger.warning(
                    f"Holding delete of {record.describe()}: a change to {record.name} failed in this pass"
                )
                result.held += 1
                result.held_by_failure = True
                continue
            logger.info(f"Deleting record {record.describe()} in {zone.fqdn}")
            if attempt(
                f"delete {record.describe()}",
                None,
                record.name,
                lambda r=record: self.provider.delete_record(zone_id, r.id),
            ):
                result.deleted += 1

        return result

    # -- reporting and scheduling --------------------------------------------

    def _finish(self, ref: ResourceRef, result: PassResult, *, provider_zone_id: str) -> None:
        self._set_phase(result.zone_key, ZonePhase.REPORTING)
        applied = result.applied
        status = ZoneStatus(
            outcome=result.outcome,
            created=applied.created,
            updated=applied.updated,
            deleted=applied.deleted,
            failed=applied.failed,
            held=applied.held,
            skipped=applied.skipped,
            plan_hash=result.plan.plan_hash(),
            provider_zone_id=provider_zone_id,
            error=result.error,
        )
        self.reporter.report_zone(ref, status)

        if result.transient is not None:
            with self._lock:
                failures = self._failures.get(result.zone_key, 0) + 1
                self._failures[result.zone_key] = failures
            retry_after = getattr(result.transient, "retry_after", None)
            if retry_after is not None:
                delay = retry_after
            else:
                delay = self.backoff.delay(failures, self._rng)
            result.backoff_seconds = delay
            self.queue.defer(result.zone_key, self._clock() + delay)
            logger.warning(f"Zone {result.zone_key}: retrying in {delay:.1f}s (attempt {failures})")
            self._set_phase(result.zone_key, ZonePhase.BACKING_OFF)
            return

        with self._lock:
            self._failures.pop(result.zone_key, None)
        self.queue.clear_deferral(result.zone_key)
        self._set_phase(result.zone_key, ZonePhase.IDLE)

    def _set_record_status(self, ref: ResourceRef, state: RecordState, error: str = "") -> None:
        # Only write when the record's state actually changes.
        with self._lock:
            if self._record_states.get(ref.key) == (state, error):
                return
        if self.reporter.report_record(ref, RecordStatus(state=state, error=error)):
            with self._lock:
                self._record_states[ref.key] = (state, error)

    def _report_invalid(self, invalid: List[InvalidRecord]) -> None:
        for item in invalid:
            logger.warning(f"Record {item.ref} is invalid: {item.error}")
            self._set_record_status(item.ref, RecordState.INVALID, str(item.error))

    def _report_records(self, snapshot: ZoneSnapshot, applied: ApplyResult) -> None:
        failed: Dict[str, str] = {}
        for _, source, error in applied.failures:
            if source is not None:
                failed[source.key] = str(error)
        for desired in snapshot.desired:
            if desired.source is None:
                continue
            if desired.source.key in failed:
                self._set_record_status(desired.source, RecordState.FAILED, failed[desired.source.key])
            elif applied.transient is None:
                self._set_record_status(desired.source, RecordState.OK)

    def report_orphans(self) -> None:
        self._report_invalid(self.cache.orphans())

    def prune_record_states(self) -> None:
        """Forget the last written state of records no longer in the cache."""
        live = self.cache.record_keys()
        with self._lock:
            for key in [k for k in self._record_states if k not in live]:
                del self._record_states[key]


# =============================================================================
# Controller
# =============================================================================


class Controller:
    """Owns the worker pool, the periodic resync and the watch event dispatcher."""

    def __init__(
        self,
        reconciler: Reconciler,
        events: "queue.Queue[Optional[WatchEvent]]",
        *,
        workers: int = 4,
        resync_seconds: float = 30.0,
        debounce_seconds: float = 1.0,
    ):
        self.reconciler = reconciler
        self.cache = reconciler.cache
        self.queue = reconciler.queue
        self.events = events
        self.workers = max(1, workers)
        self.resync_seconds = resync_seconds
        self.debounce_seconds = debounce_seconds
        self._stopping = threading.Event()
        self._threads: List[threading.Thread] = []

    # -- event dispatch ------------------------------------------------------

    def dispatch(self, event: WatchEvent) -> None:
        affected = self.cache.apply(event)
        for zone_key in sorted(affected):
            self.queue.add(zone_key, self.debounce_seconds)
        if affected:
            logger.debug(f"{event.kind.value} event affects zone(s): {', '.join(sorted(affected))}")

    def _dispatch_loop(self) -> None:
        while not self._stopping.is_set():
            event = self.events.get()
            if event is None:
                return
            try:
                self.dispatch(event)
            except Exception as e:
                logger.error(f"Failed to apply watch event {event.kind.value}: {e}", exc_info=True)

    # -- periodic resync -----------------------------------------------------

    def resync(self) -> None:
        for zone_key in self.cache.zone_keys():
            self.queue.add(zone_key)
        self.reconciler.prune_record_states()
        self.reconciler.report_orphans()

    def _resync_loop(self) -> None:
        while not self._stopping.wait(self.resync_seconds):
            try:
                self.resync()
            except Exception as e:
                logger.error(f"Periodic resync failed: {e}", exc_info=True)

    # -- workers -------------------------------------------------------------

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Take one due zone off the queue and reconcile it. Returns False if none was due."""
        zone_key = self.queue.get(timeout=timeout)
        if zone_key is None:
            return False
        try:
            self.reconciler.reconcile(zone_key)
        except Exception as e:
            logger.error(f"Unexpected error reconciling zone {zone_key}: {e}", exc_info=True)
        finally:
            self.queue.done(zone_key)
        return True

    def _worker_loop(self) -> None:
        while not self.queue.shutting_down:
            self.process_next()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        logger.info(
            f"Starting controller: {self.workers} worker(s), resync every {self.resync_seconds:g}s"
        )
        self._threads = [
            threading.Thread(target=self._dispatch_loop, name="dispatcher", daemon=True),
            threading.Thread(target=self._resync_loop, name="resync", daemon=True),
        ]
        self._threads += [
            threading.Thread(target=self._worker_loop, name=f"worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()
        self.resync()

    def stop(self, timeout: float = 10.0) -> None:
        logger.info("Stopping controller")
        self._stopping.set()
        self.queue.shut_down()
        self.events.put(None)
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        self._threads = []
        self.cache.clear()

    def run_once(self) -> List[PassResult]:
        """Reconcile every known zone once, synchronously."""
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                break
            if event is not None:
                self.dispatch(event)
        self.reconciler.prune_record_states()

        results = []
        for zone_key in self.cache.zone_keys():
            result = self.reconciler.reconcile(zone_key)
            if result is not None:
                results.append(result)
        self.reconciler.report_orphans()
        return results
