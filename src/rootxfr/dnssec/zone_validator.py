"""DNSSEC and NSEC-chain validation for a transferred zone.

Brief:
  Given the messages of a full zone transfer and a set of trusted DNSKEYs,
  check that every authoritative RRset is signed, that glue is only found
  under delegations, and that the NSEC chain covers the whole zone and closes
  back on the origin. The result is a MergeResult snapshot that the transfer
  responder can merge with local data.

Inputs:
  - list[dns.message.Message] from rootxfr.transports.axfr.
  - Trusted keys as accepted by dns.dnssec.validate ({Name: DNSKEY RRset}).

Outputs:
  - MergeResult, or BogusZoneError naming the offending owner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import dns.dnssec
import dns.message
import dns.name
import dns.rdatatype
import dns.rrset

from rootxfr.utils.records import (
    ADDRESS_TYPES,
    flatten,
    has_type,
    nsec_types,
    without_types,
)

logger = logging.getLogger(__name__)

Records = List[dns.rrset.RRset]
Verifier = Callable[[Records, Dict], bool]


class BogusZoneError(Exception):
    """Brief: Zone data failed DNSSEC or structural validation.

    Inputs:
      - reason: Short description of the failure.
      - owner: Optional owner name the failure applies to.

    Outputs:
      - Exception whose text starts with ``bogus:``.
    """

    def __init__(self, reason: str, owner: Optional[dns.name.Name] = None):
        self.reason = reason
        self.owner = owner
        text = f"bogus: {reason}"
        if owner is not None:
            text = f"{text} for {owner.to_text()}"
        super().__init__(text)


@dataclass
class OwnerRecords:
    delegation: bool = False
    records: Records = field(default_factory=list)


@dataclass
class MergeResult:
    """Brief: Trusted snapshot of an externally fetched zone.

    Inputs/fields:
      - names: Owner name -> OwnerRecords, in arrival order.
      - glue: Owner names classified as glue for a delegation.
      - chain: Owner names visited by the NSEC walk, in visitation order.
        A dict is used as an ordered set (values are unused).

    Outputs:
      - Instances are mutated by the transfer responder as names are
        consumed, so every session must work on its own copy().
    """

    names: Dict[dns.name.Name, OwnerRecords] = field(default_factory=dict)
    glue: Set[dns.name.Name] = field(default_factory=set)
    chain: Dict[dns.name.Name, None] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "MergeResult":
        return cls()

    def copy(self) -> "MergeResult":
        """Brief: Copy the containers; records themselves are shared read-only."""

        return MergeResult(
            names={
                name: OwnerRecords(owner.delegation, list(owner.records))
                for name, owner in self.names.items()
            },
            glue=set(self.glue),
            chain=dict(self.chain),
        )


def _rrset_key(rr: dns.rrset.RRset) -> Tuple[dns.name.Name, int, int]:
    return rr.name, rr.rdtype, rr.covers


def verify_rrsets(records: Records, keys: Dict) -> bool:
    """Brief: Verify every RRset in *records* against *keys*.

    Inputs:
      - records: Records of a single owner, RRSIGs included.
      - keys: Trusted keys ({Name: DNSKEY RRset}).

    Outputs:
      - bool: True when every non-RRSIG RRset carries at least one RRSIG that
        validates; False otherwise.
    """

    rrsets: Dict[Tuple[dns.name.Name, int, int], dns.rrset.RRset] = {}
    sigs: Dict[Tuple[dns.name.Name, int], dns.rrset.RRset] = {}
    for rr in records:
        if rr.rdtype == dns.rdatatype.RRSIG:
            for rdata in rr:
                bucket = sigs.get((rr.name, rdata.type_covered))
                if bucket is None:
                    bucket = dns.rrset.RRset(
                        rr.name, rr.rdclass, dns.rdatatype.RRSIG, rdata.type_covered
                    )
                    sigs[(rr.name, rdata.type_covered)] = bucket
                bucket.add(rdata, rr.ttl)
            continue
        key = _rrset_key(rr)
        target = rrsets.get(key)
        if target is None:
            target = dns.rrset.RRset(rr.name, rr.rdclass, rr.rdtype, rr.covers)
            rrsets[key] = target
        for rdata in rr:
            target.add(rdata, rr.ttl)

    for (name, rdtype, _covers), rrset in rrsets.items():
        rrsig = sigs.get((name, rdtype))
        if rrsig is None:
            logger.debug(
                "No RRSIG for %s %s", name, dns.rdatatype.to_text(rdtype)
            )
            return False
        try:
            dns.dnssec.validate(rrset, rrsig, keys)
        except dns.dnssec.ValidationFailure as exc:
            logger.debug(
                "RRSIG validation failed for %s %s: %s",
                name,
                dns.rdatatype.to_text(rdtype),
                exc,
            )
            return False
    return True


class ZoneValidator:
    """Brief: Validate a transferred zone and build its MergeResult.

    Inputs:
      - origin: Zone origin (default: the root).
      - verifier: Callable(records, keys) -> bool; defaults to verify_rrsets.

    Outputs:
      - verify_zone(messages, keys) -> MergeResult.

    Notes:
      - An instance holds per-transfer state; use a new one for each zone.
    """

    def __init__(
        self,
        origin: str | dns.name.Name = dns.name.root,
        verifier: Optional[Verifier] = None,
    ):
        self.origin = dns.name.from_text(origin) if isinstance(origin, str) else origin
        self.verifier = verifier or verify_rrsets
        self.owners: Dict[dns.name.Name, OwnerRecords] = {}
        self.maybe_glue: Set[dns.name.Name] = set()

    def _collect(self, records: Iterable[dns.rrset.RRset]) -> None:
        for rr in records:
            if rr.rdtype == dns.rdatatype.NSEC3:
                raise BogusZoneError("NSEC3 not supported", rr.name)

            # Any NS target may turn out to be glue.
            if rr.rdtype == dns.rdatatype.NS:
                for rdata in rr:
                    self.maybe_glue.add(rdata.target)

            owner = self.owners.get(rr.name)
            if owner is None:
                owner = OwnerRecords()
                self.owners[rr.name] = owner

            if rr.rdtype == dns.rdatatype.NS and rr.name != self.origin:
                owner.delegation = True

            owner.records.append(rr)

    def _enclosing_owner(self, name: dns.name.Name) -> Optional[OwnerRecords]:
        parent = name
        while parent != self.origin and parent != dns.name.root:
            parent = parent.parent()
            owner = self.owners.get(parent)
            if owner is not None:
                return owner
        return None

    def _is_glue(self, name: dns.name.Name, owner: OwnerRecords) -> bool:
        if name not in self.maybe_glue or name == self.origin:
            return False
        parent = self._enclosing_owner(name)
        if parent is None or not parent.delegation:
            return False
        return all(rr.rdtype in ADDRESS_TYPES for rr in owner.records)

    def verify_zone(self, messages: Iterable[dns.message.Message], keys: Dict) -> MergeResult:
        """Brief: Validate signatures and the NSEC chain of a transferred zone.

        Inputs:
          - messages: Transfer messages in arrival order.
          - keys: Trusted keys for the zone.

        Outputs:
          - MergeResult with names, glue and the NSEC chain.

        Raises:
          - BogusZoneError: on NSEC3, a failed signature, or a broken chain.
        """

        for msg in messages:
            self._collect(flatten(msg.answer))

        glue: Set[dns.name.Name] = set()
        for name, owner in self.owners.items():
            records = owner.records
            # A delegation's NS set is signed by the child, not by us.
            if owner.delegation:
                records = without_types(records, dns.rdatatype.NS)

            if self._is_glue(name, owner):
                glue.add(name)
                continue

            if not self.verifier(records, keys):
                raise BogusZoneError("unable to validate zone data", name)

        chain = self.verify_nsec()
        logger.debug(
            "Validated %d owners (%d glue, %d in NSEC chain)",
            len(self.owners),
            len(glue),
            len(chain),
        )
        return MergeResult(names=self.owners, glue=glue, chain=chain)

    def verify_nsec(self) -> Dict[dns.name.Name, None]:
        """Brief: Walk the NSEC chain from the origin until it closes.

        Outputs:
          - dict used as an ordered set of visited owner names.
        """

        name = self.origin
        seen: Dict[dns.name.Name, None] = {self.origin: None}

        while True:
            owner = self.owners.get(name)
            if owner is None:
                raise BogusZoneError("invalid data", name)

            nsecs = [
                rdata
                for rr in owner.records
                if rr.rdtype == dns.rdatatype.NSEC
                for rdata in rr
            ]
            if len(nsecs) != 1:
                raise BogusZoneError("NSEC must exist exactly once", name)

            rdata = nsecs[0]
            self.verify_bitmap(name, owner, nsec_types(rdata))

            name = rdata.next
            # Revisiting anything but the origin is a loop.
            if name in seen:
                if name != self.origin:
                    raise BogusZoneError("bad NSEC chain", name)
                break
            seen[name] = None

        return seen

    def verify_bitmap(
        self, name: dns.name.Name, owner: OwnerRecords, bitmap: Set[int]
    ) -> None:
        for rdtype in bitmap:
            if not has_type(owner.records, rdtype):
                raise BogusZoneError(
                    f"could not find type {dns.rdatatype.to_text(rdtype)}", name
                )

        if owner.delegation and dns.rdatatype.NS not in bitmap:
            raise BogusZoneError(
                "claim to have a delegation yet no NS in NSEC bitmap", name
            )
