"""Status reporter: writes reconciliation outcomes back onto the custom resources.

Status is observability only. A failed write is logged and dropped; it never
undoes or blocks changes already applied at the provider.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict

from .errors import ConflictError, KubizoneCloudflareError
from .models import RecordStatus, ResourceRef, ZoneStatus

logger = logging.getLogger(__name__)


class StatusWriter(ABC):
    """Persists status payloads, keyed by the owning resource."""

    @abstractmethod
    def write_zone_status(self, ref: ResourceRef, status: Dict[str, Any]) -> None:
        """Write zone status against `ref.resource_version`; raise ConflictError on a stale base."""
        pass

    @abstractmethod
    def write_record_status(self, ref: ResourceRef, status: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def refresh(self, ref: ResourceRef, kind: str) -> ResourceRef:
        """Return `ref` with the current resourceVersion of the live object."""
        pass


class StatusReporter:
    def __init__(self, writer: StatusWriter):
        self.writer = writer

    def report_zone(self, ref: ResourceRef, status: ZoneStatus) -> bool:
        return self._write("Zone", ref, status.to_dict(), self.writer.write_zone_status)

    def report_record(self, ref: ResourceRef, status: RecordStatus) -> bool:
        return self._write("Record", ref, status.to_dict(), self.writer.write_record_status)

    def _write(self, kind: str, ref: ResourceRef, payload: Dict[str, Any], write) -> bool:
        try:
            write(ref, payload)
            return True
        except ConflictError:
            logger.debug(f"Status conflict on {kind} {ref}, retrying with a refreshed base")
        except KubizoneCloudflareError as e:
            logger.warning(f"Failed to write status for {kind} {ref}: {e}")
            return False

        try:
            fresh = self.writer.refresh(ref, kind)
            write(fresh, payload)
            return True
        except ConflictError:
            logger.warning(f"Dropping status for {kind} {ref}: resource keeps changing")
        except KubizoneCloudflareError as e:
            logger.warning(f"Failed to write status for {kind} {ref}: {e}")
        return False
