from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional

import dns.exception
import dns.flags
import dns.message
import dns.rdatatype
import dns.rrset

from rootxfr.transports.axfr import MAX_MESSAGE_SIZE, AXFRError
from rootxfr.utils.records import record_size

logger = logging.getLogger(__name__)

WriteCallback = Callable[[bytes], Awaitable[bool]]


class AXFRWriteError(AXFRError):
    """Brief: Sending a transfer message to the client failed.

    Inputs:
      - message: Short description of the failure.

    Outputs:
      - Exception instance; fatal for the transfer in progress.
    """

    pass


class MessageWriter:
    """Brief: Pack records into size-bounded AXFR response messages.

    Inputs:
      - query: Parsed AXFR query (dns.message.Message) being answered.
      - write: Async callable taking one packed message; returns True when the
        transport accepted it.
      - max_records: Optional soft cap on records per message.

    Outputs:
      - Messages handed to *write*; ``written`` counts records accepted and
        ``messages`` counts messages sent.

    Example:
      >>> # writer = MessageWriter(query, send)
      >>> # await writer.write_all(rrs); await writer.flush()
    """

    def __init__(
        self,
        query: dns.message.Message,
        write: WriteCallback,
        *,
        max_records: Optional[int] = None,
        max_size: int = MAX_MESSAGE_SIZE,
    ):
        self.query = query
        self.write = write
        self.max_records = int(max_records) if max_records else None
        self.max_size = int(max_size)
        self.written = 0
        self.messages = 0
        self.reset()

    def reset(self) -> None:
        self.msg = dns.message.make_response(self.query)
        self.msg.flags |= dns.flags.AA
        # Approximate size, without compression.
        self.base_size = len(self.msg.to_wire())
        self.size = self.base_size

    @property
    def pending(self) -> int:
        return len(self.msg.answer)

    async def write_rr(self, rr: dns.rrset.RRset) -> None:
        """Brief: Queue one record, flushing first if it would not fit."""

        size = record_size(rr)
        if size + self.base_size > self.max_size:
            raise AXFRWriteError(
                f"record {rr.name} {dns.rdatatype.to_text(rr.rdtype)} is too large "
                f"for one message ({size} octets)"
            )
        self.written += 1
        if self.pending and (
            size + self.size > self.max_size
            or (self.max_records and self.pending >= self.max_records)
        ):
            await self.flush()

        self.size += size
        self.msg.answer.append(rr)

    async def write_all(self, rrs: Iterable[dns.rrset.RRset]) -> None:
        for rr in rrs:
            await self.write_rr(rr)

    async def flush(self) -> None:
        """Brief: Send the buffered message, if any, and start a new one.

        Raises:
          - AXFRWriteError: when the write callback fails or returns False.
        """

        if not self.msg.answer:
            return

        try:
            wire = self.msg.to_wire(max_size=self.max_size)
            ok = await self.write(wire)
        except (OSError, RuntimeError, dns.exception.TooBig) as exc:
            raise AXFRWriteError(f"unable to write message: {exc}") from exc
        if not ok:
            raise AXFRWriteError("unable to write message")

        self.messages += 1
        logger.debug(
            "Sent AXFR message %d (%d bytes, %d records so far)",
            self.messages,
            len(wire),
            self.written,
        )
        self.reset()
