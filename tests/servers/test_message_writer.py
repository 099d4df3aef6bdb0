"""
Brief: Tests for rootxfr.servers.writer.MessageWriter.

Inputs:
  - None

Outputs:
  - None
"""

import asyncio
from typing import List

import dns.flags
import dns.message
import dns.rdatatype
import pytest

from rootxfr.servers.writer import AXFRWriteError, MessageWriter
from rootxfr.utils.records import record_size


def _query() -> dns.message.Message:
    return dns.message.make_query(".", dns.rdatatype.AXFR)


class _Sink:
    """Brief: Collects packed messages; optionally refuses or raises.

    Inputs:
      - ok: value returned from each write.
      - exc: exception raised instead of accepting.
    """

    def __init__(self, ok: bool = True, exc: Exception = None):
        self.ok = ok
        self.exc = exc
        self.wires: List[bytes] = []

    async def __call__(self, wire: bytes) -> bool:
        if self.exc is not None:
            raise self.exc
        self.wires.append(wire)
        return self.ok

    def messages(self) -> List[dns.message.Message]:
        return [
            dns.message.from_wire(w, one_rr_per_rrset=True) for w in self.wires
        ]


def _txt_records(make_rr, n: int, payload: str = "x" * 200):
    return [make_rr(f"r{i}.example.", "TXT", f'"{payload}"') for i in range(n)]


def test_record_cap_splits_messages(make_rr) -> None:
    """Brief: max_records bounds the number of answers per message.

    Inputs:
      - 10 records with max_records=4.

    Outputs:
      - None; asserts 4/4/2 split and the counters.
    """

    sink = _Sink()
    w = MessageWriter(_query(), sink, max_records=4)

    async def run():
        await w.write_all(_txt_records(make_rr, 10))
        await w.flush()

    asyncio.run(run())

    assert [len(m.answer) for m in sink.messages()] == [4, 4, 2]
    assert w.written == 10
    assert w.messages == 3


def test_size_bound_never_exceeded(make_rr) -> None:
    sink = _Sink()
    records = _txt_records(make_rr, 400)
    w = MessageWriter(_query(), sink)

    async def run():
        await w.write_all(records)
        await w.flush()

    asyncio.run(run())

    assert len(sink.wires) > 1
    assert all(len(wire) <= 65535 for wire in sink.wires)
    assert sum(len(m.answer) for m in sink.messages()) == 400


def test_small_max_size_flushes_before_overflow(make_rr) -> None:
    records = _txt_records(make_rr, 3)
    size = record_size(records[0])
    sink = _Sink()
    base = len(dns.message.make_response(_query()).to_wire())
    w = MessageWriter(_query(), sink, max_size=base + size + size // 2)

    async def run():
        await w.write_all(records)
        await w.flush()

    asyncio.run(run())
    assert [len(m.answer) for m in sink.messages()] == [1, 1, 1]


def test_responses_answer_the_query(make_rr) -> None:
    q = _query()
    sink = _Sink()
    w = MessageWriter(q, sink)

    async def run():
        await w.write_rr(make_rr(".", "SOA", "a. b. 1 2 3 4 5"))
        await w.flush()

    asyncio.run(run())
    (msg,) = sink.messages()
    assert msg.id == q.id
    assert msg.flags & dns.flags.QR
    assert msg.flags & dns.flags.AA
    assert msg.question[0].rdtype == dns.rdatatype.AXFR


def test_flush_without_records_is_noop() -> None:
    sink = _Sink()
    w = MessageWriter(_query(), sink)
    asyncio.run(w.flush())
    assert sink.wires == []
    assert w.messages == 0


def test_refused_write_raises(make_rr) -> None:
    w = MessageWriter(_query(), _Sink(ok=False))

    async def run():
        await w.write_rr(make_rr(".", "NS", "a."))
        await w.flush()

    with pytest.raises(AXFRWriteError, match="unable to write message"):
        asyncio.run(run())


def test_transport_error_is_wrapped(make_rr) -> None:
    w = MessageWriter(_query(), _Sink(exc=ConnectionResetError("reset")))

    async def run():
        await w.write_rr(make_rr(".", "NS", "a."))
        await w.flush()

    with pytest.raises(AXFRWriteError) as excinfo:
        asyncio.run(run())
    assert isinstance(excinfo.value.__cause__, ConnectionResetError)


def test_record_larger_than_a_message_is_rejected(make_rr) -> None:
    """Brief: A record that cannot fit even an empty message fails the transfer.

    Inputs:
      - One 200-octet TXT record with a message limit just above the header.

    Outputs:
      - None; asserts AXFRWriteError naming the record and nothing sent.
    """

    sink = _Sink()
    base = len(dns.message.make_response(_query()).to_wire())
    w = MessageWriter(_query(), sink, max_size=base + 16)

    with pytest.raises(AXFRWriteError, match=r"record r0\.example\. TXT is too large"):
        asyncio.run(w.write_all(_txt_records(make_rr, 1)))

    assert sink.wires == []
    assert w.written == 0
