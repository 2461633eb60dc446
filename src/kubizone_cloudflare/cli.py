#!/usr/bin/env python3
"""kubizone-cloudflare - Kubernetes DNS zones to Cloudflare

Watches kubi.zone Zone and Record custom resources and converges the records
of the matching Cloudflare zones to them.

Environment variables:

    Cloudflare:
        CLOUDFLARE_API_TOKEN        API token with Zone:Read and DNS:Edit (required)
        CF_API_KEY                  Legacy name for CLOUDFLARE_API_TOKEN
        CLOUDFLARE_API_URL          API base URL (default: https://api.cloudflare.com/client/v4)

    Runtime:
        SYNC_MODE                   "once" or "watch" (default: watch)
        RECONCILE_MODE              "sync" applies deletes, "upsert" never deletes (default: sync)
        RECONCILE_INTERVAL_SECONDS  Full resync interval (default: 30)
        REQUEUE_TIME_SECS           Legacy name for RECONCILE_INTERVAL_SECONDS
        WORKER_COUNT                Concurrent zone reconcilers (default: 4)
        CALL_TIMEOUT_SECONDS        Timeout of each Cloudflare API call (default: 10)
        BACKOFF_BASE_SECONDS        First retry delay after a transient failure (default: 1)
        BACKOFF_MAX_SECONDS         Upper bound of the retry delay (default: 300)
        DEBOUNCE_SECONDS            Delay coalescing bursts of watch events (default: 1)
        ZONE_REFRESH_SECONDS        How often the Cloudflare zone list is reloaded (default: 300)
        LOG_LEVEL                   DEBUG, INFO, WARNING, ERROR (default: INFO)

    Ownership:
        CONTROLLER_NAME             Written as "managed-by:<name>" on created records
                                    (default: kubizone-cloudflare)
        MANAGED_NAMES               Comma-separated patterns of record names, relative to
                                    the zone ("@" is the apex), this controller owns.
                                    Records outside them are never touched. (default: *)
                                    Zones can override this with the annotation
                                    cloudflare.kubi.zone/managed-names.
        REQUIRE_OWNERSHIP_MARKER    Only touch existing records carrying the
                                    managed-by marker (default: false)

    Kubernetes:
        IN_CLUSTER                  "true" forces in-cluster config, "false" forces the local
                                    kubeconfig (default: in-cluster with kubeconfig fallback)

    Config file:
        CONFIG_PATH                 YAML file, or directory of *.yaml files, whose keys
                                    override the settings above, e.g.:
                                      reconcile_interval_seconds: 60
                                      managed_names: ["www", "api", "*.svc"]
                                      reconcile_mode: upsert
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import sys
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml
from kubernetes import client

from .cache import DesiredStateCache
from .cloudflare import DEFAULT_API_URL, CloudflareDNSProvider
from .errors import FatalError
from .kube import KubernetesStatusWriter, KubernetesWatchSource, load_kube_config
from .models import ManagedScope
from .reconciler import (
    BackoffPolicy,
    Controller,
    HealthState,
    ReconcileMode,
    Reconciler,
    ZoneDirectory,
)
from .status import StatusReporter
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

HEALTH_CHECK_SECONDS = 30.0

# =============================================================================
# Config File Utilities
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(path.glob("*.yaml"))
        return [str(f) for f in yaml_files if not f.name.endswith(".template")]

    return []


def load_config_files(config_path: str) -> Dict[str, Any]:
    """Merge the mappings of every config file; later files win."""
    merged: Dict[str, Any] = {}
    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            continue
        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(f"Config file {config_file} is not a mapping, ignoring")
            continue
        merged.update(data)
    return merged


# =============================================================================
# Settings
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_optional_bool(value: Any) -> Optional[bool]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return _parse_bool(value)


def _parse_patterns(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        items = [p.strip() for p in str(value or "").split(",")]
    return tuple(p for p in items if p)


@dataclass(frozen=True)
class Settings:
    api_token: str = ""
    api_url: str = DEFAULT_API_URL
    sync_mode: str = "watch"
    reconcile_mode: str = "sync"
    reconcile_interval_seconds: float = 30.0
    worker_count: int = 4
    call_timeout_seconds: float = 10.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    debounce_seconds: float = 1.0
    zone_refresh_seconds: float = 300.0
    controller_name: str = "kubizone-cloudflare"
    managed_names: Tuple[str, ...] = field(default=("*",))
    require_ownership_marker: bool = False
    in_cluster: Optional[bool] = None
    log_level: str = "INFO"

    # Values that could not be parsed; reported by validate_settings.
    errors: Tuple[str, ...] = field(default=(), compare=False)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        errors: List[str] = []

        def number(names: Tuple[str, ...], default: Any, cast: Callable[[Any], Any]) -> Any:
            for name in names:
                raw = env.get(name)
                if raw:
                    try:
                        return cast(raw)
                    except ValueError:
                        errors.append(f"Invalid {name}: {raw!r} is not a number")
                        return default
            return default

        settings = cls(
            api_token=env.get("CLOUDFLARE_API_TOKEN") or env.get("CF_API_KEY", ""),
            api_url=env.get("CLOUDFLARE_API_URL", DEFAULT_API_URL),
            sync_mode=env.get("SYNC_MODE", "watch").lower().strip(),
            reconcile_mode=env.get("RECONCILE_MODE", "sync").lower().strip(),
            reconcile_interval_seconds=number(
                ("RECONCILE_INTERVAL_SECONDS", "REQUEUE_TIME_SECS"), 30.0, float
            ),
            worker_count=number(("WORKER_COUNT",), 4, int),
            call_timeout_seconds=number(("CALL_TIMEOUT_SECONDS",), 10.0, float),
            backoff_base_seconds=number(("BACKOFF_BASE_SECONDS",), 1.0, float),
            backoff_max_seconds=number(("BACKOFF_MAX_SECONDS",), 300.0, float),
            debounce_seconds=number(("DEBOUNCE_SECONDS",), 1.0, float),
            zone_refresh_seconds=number(("ZONE_REFRESH_SECONDS",), 300.0, float),
            controller_name=env.get("CONTROLLER_NAME", "kubizone-cloudflare").strip(),
            managed_names=_parse_patterns(env.get("MANAGED_NAMES", "*")),
            require_ownership_marker=_parse_bool(env.get("REQUIRE_OWNERSHIP_MARKER"), default=False),
            in_cluster=_parse_optional_bool(env.get("IN_CLUSTER")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
        return replace(settings, errors=tuple(errors))

    def with_overrides(self, overrides: Mapping[str, Any]) -> "Settings":
        """Apply config-file values, converting them to each field's type."""
        known = {f.name: f for f in fields(self) if f.name != "errors"}
        changes: Dict[str, Any] = {}
        errors = list(self.errors)
        for name, value in overrides.items():
            if name not in known:
                logger.warning(f"Ignoring unknown config key '{name}'")
                continue
            current = getattr(self, name)
            if name == "managed_names":
                changes[name] = _parse_patterns(value)
            elif name == "in_cluster":
                changes[name] = _parse_optional_bool(value)
            elif isinstance(current, bool):
                changes[name] = _parse_bool(value, default=current)
            elif isinstance(current, (int, float)):
                try:
                    changes[name] = type(current)(value)
                except (TypeError, ValueError):
                    errors.append(f"Invalid config value for {name}: {value!r} is not a number")
            else:
                changes[name] = str(value).strip()
        return replace(self, errors=tuple(errors), **changes)

    @property
    def managed_scope(self) -> ManagedScope:
        owner = self.controller_name if self.require_ownership_marker else None
        return ManagedScope(patterns=self.managed_names or ("*",), owner=owner)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    settings = Settings.from_env(env)
    config_path = env.get("CONFIG_PATH", "")
    if config_path:
        overrides = load_config_files(config_path)
        if overrides:
            settings = settings.with_overrides(overrides)
    return settings


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = list(settings.errors)
    if not settings.api_token:
        errors.append("CLOUDFLARE_API_TOKEN is required")
    if settings.sync_mode not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")
    if settings.reconcile_mode not in {m.value for m in ReconcileMode}:
        errors.append(f"Invalid RECONCILE_MODE: {settings.reconcile_mode}. Use 'sync' or 'upsert'")
    if settings.worker_count < 1:
        errors.append("WORKER_COUNT must be at least 1")
    if settings.reconcile_interval_seconds <= 0:
        errors.append("RECONCILE_INTERVAL_SECONDS must be positive")
    if settings.call_timeout_seconds <= 0:
        errors.append("CALL_TIMEOUT_SECONDS must be positive")
    if settings.backoff_base_seconds <= 0 or settings.backoff_max_seconds < settings.backoff_base_seconds:
        errors.append("BACKOFF_BASE_SECONDS must be positive and not above BACKOFF_MAX_SECONDS")
    if settings.require_ownership_marker and not settings.controller_name:
        errors.append("CONTROLLER_NAME is required when REQUIRE_OWNERSHIP_MARKER is set")
    return errors


# =============================================================================
# Logging Setup
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Main
# =============================================================================


def build_controller(
    settings: Settings,
    *,
    provider: CloudflareDNSProvider,
    api: client.CustomObjectsApi,
    events: "queue.Queue",
    health: HealthState,
) -> Controller:
    work_queue = WorkQueue()
    cache = DesiredStateCache(default_scope=settings.managed_scope)
    reconciler = Reconciler(
        cache=cache,
        provider=provider,
        reporter=StatusReporter(KubernetesStatusWriter(api)),
        work_queue=work_queue,
        directory=ZoneDirectory(provider, refresh_seconds=settings.zone_refresh_seconds),
        mode=ReconcileMode(settings.reconcile_mode),
        backoff=BackoffPolicy(settings.backoff_base_seconds, settings.backoff_max_seconds),
        health=health,
    )
    return Controller(
        reconciler,
        events,
        workers=settings.worker_count,
        resync_seconds=settings.reconcile_interval_seconds,
        debounce_seconds=settings.debounce_seconds,
    )


def main():
    """Main entry point."""
    settings = load_settings()
    configure_logging(settings.log_level)
    logger.info(f"kubizone-cloudflare: kubi.zone -> Cloudflare ({settings.reconcile_mode} mode)")

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    provider = CloudflareDNSProvider(
        settings.api_token,
        base_url=settings.api_url,
        timeout_seconds=settings.call_timeout_seconds,
        controller_name=settings.controller_name,
    )
    if not provider.verify_token():
        logger.error(f"Cannot connect to {provider.name}. Exiting.")
        sys.exit(1)

    load_kube_config(settings.in_cluster)
    api = client.CustomObjectsApi()
    events: "queue.Queue" = queue.Queue()
    health = HealthState()
    source = KubernetesWatchSource(api, events, health=health)
    controller = build_controller(settings, provider=provider, api=api, events=events, health=health)

    logger.info(f"Sync mode: {settings.sync_mode}")
    logger.info(f"Managed names: {', '.join(settings.managed_scope.patterns)}")
    if settings.sync_mode == "watch":
        logger.info(f"Resync interval: {settings.reconcile_interval_seconds:g}s")

    try:
        zones, records = source.list_all()
    except FatalError as e:
        logger.error(f"{e}. Exiting.")
        sys.exit(1)
    controller.cache.replace_all(zones, records)

    if settings.sync_mode == "once":
        results = controller.run_once()
        failed = [r for r in results if r.outcome.value != "ok"]
        logger.info(f"Reconciled {len(results)} zone(s), {len(failed)} not fully converged")
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    try:
        source.start()
        controller.start()
        while not stop.wait(HEALTH_CHECK_SECONDS):
            if not health.healthy:
                logger.warning(f"Unhealthy, keeping last known state: {health.last_error}")
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Shutting down gracefully...")
        source.stop()
        controller.stop()


if __name__ == "__main__":
    main()
