"""Record-level helpers shared by the requester, validator and writer.

Brief:
  Zone transfer code works on individual resource records rather than on
  RRsets. A *record* here is a ``dns.rrset.RRset`` holding exactly one rdata,
  which keeps arrival order intact and lets the same owner/type appear twice
  (the opening and closing SOA of a transfer).

Inputs:
  - dnspython RRsets and messages.

Outputs:
  - Lists of single-rdata RRsets, sizes and type sets.
"""

from __future__ import annotations

import io
from typing import Iterable, List, Set

import dns.message
import dns.rdatatype
import dns.rrset

ADDRESS_TYPES = frozenset({dns.rdatatype.A, dns.rdatatype.AAAA})


def split_rrset(rrset: dns.rrset.RRset) -> List[dns.rrset.RRset]:
    """Brief: Split an RRset into single-rdata records.

    Inputs:
      - rrset: Any dnspython RRset.

    Outputs:
      - list[RRset]: One RRset per rdata, preserving the rdata order.
    """

    if len(rrset) == 1:
        return [rrset]
    out: List[dns.rrset.RRset] = []
    for rdata in rrset:
        rr = dns.rrset.RRset(rrset.name, rrset.rdclass, rrset.rdtype, rrset.covers)
        rr.update_ttl(rrset.ttl)
        rr.add(rdata)
        out.append(rr)
    return out


def flatten(rrsets: Iterable[dns.rrset.RRset]) -> List[dns.rrset.RRset]:
    """Brief: Flatten a sequence of RRsets into records."""

    out: List[dns.rrset.RRset] = []
    for rrset in rrsets:
        out.extend(split_rrset(rrset))
    return out


def message_records(messages: Iterable[dns.message.Message]) -> List[dns.rrset.RRset]:
    """Brief: Return every answer record of *messages* in arrival order."""

    out: List[dns.rrset.RRset] = []
    for msg in messages:
        out.extend(flatten(msg.answer))
    return out


def record_size(rr: dns.rrset.RRset) -> int:
    """Brief: Uncompressed wire size of a record.

    Inputs:
      - rr: Record (single-rdata RRset).

    Outputs:
      - int: Number of octets the record occupies without name compression.
    """

    buf = io.BytesIO()
    rr.to_wire(buf)
    return buf.tell()


def has_type(records: Iterable[dns.rrset.RRset], rdtype: int) -> bool:
    return any(rr.rdtype == rdtype for rr in records)


def without_types(
    records: Iterable[dns.rrset.RRset], *rdtypes: int
) -> List[dns.rrset.RRset]:
    """Brief: Drop records whose type is one of *rdtypes*."""

    skip = set(rdtypes)
    return [rr for rr in records if rr.rdtype not in skip]


def only_types(records: Iterable[dns.rrset.RRset], *rdtypes: int) -> List[dns.rrset.RRset]:
    """Brief: Keep only records whose type is one of *rdtypes*."""

    keep = set(rdtypes)
    return [rr for rr in records if rr.rdtype in keep]


def nsec_types(rdata) -> Set[int]:
    """Brief: Decode the type bitmap of an NSEC rdata.

    Inputs:
      - rdata: ``dns.rdtypes.ANY.NSEC.NSEC`` instance.

    Outputs:
      - set[int]: Every rdtype whose bit is set in the bitmap windows.

    Example:
      >>> import dns.rdata
      >>> rd = dns.rdata.from_text("IN", "NSEC", "b. NS RRSIG NSEC")
      >>> sorted(dns.rdatatype.to_text(t) for t in nsec_types(rd))
      ['NS', 'NSEC', 'RRSIG']
    """

    types: Set[int] = set()
    for window, bitmap in rdata.windows:
        for i, byte in enumerate(bitmap):
            for bit in range(8):
                if byte & (0x80 >> bit):
                    types.add(window * 256 + i * 8 + bit)
    return types
