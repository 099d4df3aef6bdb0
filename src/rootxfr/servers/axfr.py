"""AXFR responder: refusal policy and zone streaming.

Brief:
  Answers full zone transfer requests for the local zone. Local names are
  streamed in store order; when external merging is enabled, names from a
  validated external snapshot are merged in under a collision policy and the
  remaining external names (plus their glue) are streamed afterwards. The
  stream always opens and closes with the local SOA.

Inputs:
  - A local store exposing soa() and iteration over (name, encoded resource).
  - Optional ExternalZone for merging.

Outputs:
  - Packed refusals for disallowed requests, or the transfer itself written
    through a MessageWriter.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Callable, Iterable, List, Optional

import dns.exception
import dns.message
import dns.name
import dns.rdatatype
import dns.rrset
from dnslib import QTYPE, RCODE, DNSError, DNSRecord

from rootxfr.dnssec.zone_validator import MergeResult
from rootxfr.external_zone import ExternalZone
from rootxfr.servers.writer import MessageWriter, WriteCallback
from rootxfr.stores.zonefile import decode_resource
from rootxfr.utils.records import ADDRESS_TYPES, only_types, without_types

logger = logging.getLogger(__name__)

PREFER_LOCAL = "local"
PREFER_EXTERNAL = "external"

Decoder = Callable[[bytes], List[dns.rrset.RRset]]


def _reply(req: DNSRecord, rcode: int) -> bytes:
    r = req.reply()
    r.header.rcode = rcode
    return r.pack()


async def stream_zone(
    writer: MessageWriter,
    store,
    merge: MergeResult,
    prefer: str = PREFER_LOCAL,
    *,
    decoder: Decoder = decode_resource,
    origin: dns.name.Name = dns.name.root,
) -> None:
    """Brief: Write a complete SOA-bounded transfer through *writer*.

    Inputs:
      - writer: MessageWriter bound to the client's query.
      - store: Local store; soa() plus iteration over (name, resource blob).
      - merge: Session-owned MergeResult (mutated as names are consumed).
      - prefer: PREFER_LOCAL or PREFER_EXTERNAL for names present in both.
      - decoder: Turns a resource blob into records.
      - origin: Zone origin; never re-emitted from the external snapshot.

    Outputs:
      - None; raises AXFRWriteError if the client cannot be written to.
    """

    soa = store.soa()
    await writer.write_rr(soa)

    for name_text, data in store:
        name = dns.name.from_text(name_text)
        records = without_types(decoder(data), dns.rdatatype.RRSIG)

        # Apex data always comes from the local zone.
        if name != origin and name in merge.chain:
            logger.info("Name collision for %s (prefer %s)", name, prefer)
            if prefer == PREFER_EXTERNAL:
                continue
            del merge.chain[name]

        await writer.write_all(records)

    for name in list(merge.chain):
        # The local SOA bounds the stream; the external apex is not merged.
        if name == origin:
            continue
        owner = merge.names.get(name)
        if owner is None:
            continue

        records = without_types(
            owner.records, dns.rdatatype.NSEC, dns.rdatatype.RRSIG
        )
        await writer.write_all(records)

        for rr in records:
            if rr.rdtype != dns.rdatatype.NS:
                continue
            for rdata in rr:
                target = rdata.target
                if target not in merge.glue:
                    continue
                merge.glue.discard(target)
                glue_owner = merge.names.get(target)
                if glue_owner is not None:
                    await writer.write_all(
                        only_types(glue_owner.records, *ADDRESS_TYPES)
                    )

    await writer.flush()
    # The last message carries only the closing SOA.
    await writer.write_rr(soa)
    await writer.flush()


class AXFRResponder:
    """Brief: Decide whether a transfer may proceed, then stream it.

    Inputs:
      - store: Local store (see stream_zone).
      - allow: IP addresses or CIDR networks allowed to transfer.
      - chunk_length: Soft cap on records per response message.
      - external: Optional ExternalZone; when set, merging is enabled.
      - prefer: Collision policy, PREFER_LOCAL or PREFER_EXTERNAL.
      - decoder: Resource blob decoder for the store.
      - origin: Zone served (default: the root).

    Outputs:
      - refusal(): packed refusal, b"" to drop, or None to proceed.
      - send_axfr(): number of records written.
    """

    def __init__(
        self,
        store,
        *,
        allow: Iterable[str] = ("127.0.0.1",),
        chunk_length: Optional[int] = 1500,
        external: Optional[ExternalZone] = None,
        prefer: str = PREFER_LOCAL,
        decoder: Decoder = decode_resource,
        origin: str = ".",
    ):
        if prefer not in (PREFER_LOCAL, PREFER_EXTERNAL):
            raise ValueError(f"prefer must be 'local' or 'external', got {prefer!r}")
        self.store = store
        self.allow = list(allow)
        self.allow_nets = [ipaddress.ip_network(n, strict=False) for n in self.allow]
        self.chunk_length = chunk_length
        self.external = external
        self.prefer = prefer
        self.decoder = decoder
        self.origin = dns.name.from_text(origin)

    def is_allowed(self, client_ip: str) -> bool:
        try:
            ip = ipaddress.ip_address(client_ip)
        except ValueError:
            return False
        return any(ip in net for net in self.allow_nets)

    def refusal(self, query: bytes, client_ip: str, transport: str) -> Optional[bytes]:
        """Brief: Check a request before any transfer work is done.

        Inputs:
          - query: Wire-format request.
          - client_ip: Source address of the request.
          - transport: "tcp" or "udp".

        Outputs:
          - None when the transfer may proceed; otherwise a packed reply
            (REFUSED, NOTIMP or FORMERR), or b"" when the request cannot even
            be parsed and should be dropped.
        """

        try:
            req = DNSRecord.parse(query)
            # dnslib ignores trailing bytes; send_axfr() parses strictly.
            dns.message.from_wire(query)
        except (DNSError, dns.exception.DNSException) as exc:
            logger.debug("Dropping malformed request from %s: %s", client_ip, exc)
            return b""

        if not req.questions:
            return _reply(req, RCODE.FORMERR)

        q = req.q
        if q.qtype != QTYPE.AXFR:
            return _reply(req, RCODE.NOTIMP)

        qname = dns.name.from_text(str(q.qname))
        if qname != self.origin:
            logger.debug("Refusing transfer of %s to %s", qname, client_ip)
            return _reply(req, RCODE.REFUSED)

        # AXFR is not designed for datagram transport.
        if transport != "tcp":
            logger.debug("No zone transfer requests over %s.", transport)
            return _reply(req, RCODE.REFUSED)

        if not self.is_allowed(client_ip):
            logger.debug(
                "Address %s cannot send zone transfer request; "
                "check allowed ip addresses.",
                client_ip,
            )
            return _reply(req, RCODE.REFUSED)

        return None

    async def send_axfr(
        self, query: bytes, client_ip: str, write: WriteCallback
    ) -> int:
        """Brief: Run one transfer session for an accepted request.

        Inputs:
          - query: Wire-format AXFR request (already accepted by refusal()).
          - client_ip: Peer address, for logging.
          - write: Async callable sending one packed message.

        Outputs:
          - int: Number of records written.

        Raises:
          - AXFRError / BogusZoneError: when merging is enabled and the
            external zone cannot be obtained or validated.
          - AXFRWriteError: when the client cannot be written to.
        """

        msg = dns.message.from_wire(query)
        merge = MergeResult.empty()
        if self.external is not None:
            merge = await self.external.get()

        logger.debug("Starting zone transfer to %s", client_ip)
        writer = MessageWriter(msg, write, max_records=self.chunk_length)
        await stream_zone(
            writer,
            self.store,
            merge,
            self.prefer,
            decoder=self.decoder,
            origin=self.origin,
        )
        logger.info(
            "Zone transfer to %s complete: %d records in %d messages",
            client_ip,
            writer.written,
            writer.messages,
        )
        return writer.written


def servfail(query: bytes) -> bytes:
    """Brief: Packed SERVFAIL reply for a request whose transfer failed early."""

    return _reply(DNSRecord.parse(query), RCODE.SERVFAIL)
