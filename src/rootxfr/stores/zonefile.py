"""Local authoritative name store backed by a master zone file.

Brief:
  The transfer responder walks the local store as an ordered sequence of
  (name, encoded resource) pairs and decodes each resource into records on
  demand. Here the store is a master file parsed once with dnspython and the
  encoded resource is the wire body of a DNS message carrying the name's
  RRsets in its answer section.

Inputs:
  - Path to a BIND-style master file and its origin.

Outputs:
  - ZoneFileStore exposing soa() and iteration over encoded resources.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Tuple

import dns.message
import dns.name
import dns.rdatatype
import dns.rrset
import dns.zone

from rootxfr.utils.records import flatten

logger = logging.getLogger(__name__)


def encode_resource(rrsets: Iterable[dns.rrset.RRset]) -> bytes:
    """Brief: Encode RRsets of one name into an opaque resource blob.

    Inputs:
      - rrsets: RRsets owned by a single name.

    Outputs:
      - bytes: Wire-format message body with the RRsets as answers.
    """

    msg = dns.message.Message(id=0)
    for rrset in rrsets:
        msg.answer.append(rrset)
    return msg.to_wire()


def decode_resource(data: bytes) -> List[dns.rrset.RRset]:
    """Brief: Decode a resource blob into single-rdata records."""

    msg = dns.message.from_wire(data, one_rr_per_rrset=True)
    return flatten(msg.answer)


class ZoneFileStore:
    """Brief: Ordered local name store loaded from a master file.

    Inputs:
      - path: Master file path.
      - origin: Zone origin (default: the root).

    Outputs:
      - Iteration yields (owner_text, encoded_resource) in canonical order,
        apex first without its SOA; soa() returns the apex SOA record.

    Example:
      >>> # store = ZoneFileStore("root.zone")
      >>> # for name, blob in store: records = decode_resource(blob)
    """

    def __init__(self, path: str, origin: str = "."):
        self.path = path
        self.origin = dns.name.from_text(origin)
        self.zone = dns.zone.from_file(path, origin=self.origin, relativize=False)
        logger.info(
            "Loaded %d names for %s from %s", len(self.zone.nodes), self.origin, path
        )

    def soa(self) -> dns.rrset.RRset:
        rdataset = self.zone.find_rdataset(self.origin, dns.rdatatype.SOA)
        return dns.rrset.from_rdata_list(self.origin, rdataset.ttl, list(rdataset))

    def __iter__(self) -> Iterator[Tuple[str, bytes]]:
        for name in sorted(self.zone.nodes.keys()):
            node = self.zone.nodes[name]
            rrsets = [
                dns.rrset.from_rdata_list(name, rdataset.ttl, list(rdataset))
                for rdataset in node.rdatasets
                # The SOA bounds the transfer; it is served through soa().
                if not (name == self.origin and rdataset.rdtype == dns.rdatatype.SOA)
            ]
            if not rrsets:
                continue
            yield name.to_text(), encode_resource(rrsets)
