"""Actual-state fetcher: the provider's view of a zone, limited to managed names."""

from __future__ import annotations

import logging
from typing import List

from .cloudflare import DNSProvider
from .models import ActualRecord, Zone, sort_records

logger = logging.getLogger(__name__)


class ActualStateFetcher:
    def __init__(self, provider: DNSProvider):
        self.provider = provider

    def fetch(self, zone: Zone) -> List[ActualRecord]:
        """Return the zone's live records that fall inside its managed scope.

        Provider errors propagate unchanged; a failed page fails the whole fetch.
        """
        if not zone.provider_id:
            raise ValueError(f"zone {zone.key} has no provider zone id")

        records = self.provider.list_records(zone.provider_id)
        managed = [r for r in records if zone.scope.contains(r, zone.fqdn)]
        skipped = len(records) - len(managed)
        logger.debug(
            f"Zone {zone.fqdn}: {len(managed)} managed records"
            + (f" ({skipped} outside managed scope)" if skipped else "")
        )
        return sort_records(managed)
