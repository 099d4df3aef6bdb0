"""Fetch, validate and cache an external zone for merging into transfers.

Brief:
  ExternalZone ties the AXFR requester, the trust anchors and the zone
  validator together. A validated MergeResult is kept for refresh_interval
  seconds (or until invalidate() is called) and each transfer session gets
  its own copy to consume.

Inputs:
  - AXFRClient, TrustAnchors, origin and refresh interval.

Outputs:
  - await get() -> MergeResult (session-owned copy).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

import dns.message
import dns.name
from cachetools import TTLCache

from rootxfr.dnssec.trust_anchors import TrustAnchors
from rootxfr.dnssec.zone_validator import MergeResult, ZoneValidator
from rootxfr.transports.axfr import AXFRClient

logger = logging.getLogger(__name__)


class ExternalZone:
    """Brief: Cached, validated snapshot of an external zone.

    Inputs:
      - client: AXFRClient used to fetch the zone.
      - anchors: TrustAnchors deriving the zone's trusted DNSKEYs.
      - origin: Zone to fetch (default: the root).
      - refresh_interval: Seconds a validated snapshot is reused.
      - validator_factory: Callable(origin) -> ZoneValidator.

    Outputs:
      - get(): session copy of the cached MergeResult, fetching when stale.
    """

    def __init__(
        self,
        client: AXFRClient,
        anchors: TrustAnchors,
        *,
        origin: str = ".",
        refresh_interval: float = 3600,
        validator_factory: Optional[Callable[[dns.name.Name], ZoneValidator]] = None,
    ):
        self.client = client
        self.anchors = anchors
        self.origin = dns.name.from_text(origin)
        self.validator_factory = validator_factory or ZoneValidator
        self._cache: TTLCache = TTLCache(
            maxsize=1, ttl=max(1.0, float(refresh_interval))
        )
        # One upstream transfer at a time; waiting sessions reuse its result.
        self._fetch_lock = asyncio.Lock()

    def invalidate(self) -> None:
        """Brief: Drop the cached snapshot so the next session refetches."""

        logger.info("External zone %s invalidated", self.origin)
        self._cache.clear()

    def _validate(self, messages: List[dns.message.Message]) -> MergeResult:
        keys = self.anchors.trusted_keys(messages, self.origin)
        return self.validator_factory(self.origin).verify_zone(messages, keys)

    async def fetch(self) -> MergeResult:
        """Brief: Transfer and validate the zone.

        Raises:
          - AXFRError: when no server produced a transfer.
          - BogusZoneError: when the data fails validation.
        """

        messages = await self.client.query(self.origin)
        # Signature checks are CPU bound; keep them off the event loop.
        result = await asyncio.get_running_loop().run_in_executor(
            None, self._validate, messages
        )
        logger.info(
            "Validated external zone %s: %d names, %d glue, %d in NSEC chain",
            self.origin,
            len(result.names),
            len(result.glue),
            len(result.chain),
        )
        return result

    async def get(self) -> MergeResult:
        key = self.origin.to_text()
        async with self._fetch_lock:
            cached = self._cache.get(key)
            if cached is None:
                cached = await self.fetch()
                self._cache[key] = cached
        return cached.copy()
