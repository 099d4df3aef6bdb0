from __future__ import annotations

import asyncio
import ipaddress
import logging
from typing import Any, List, NamedTuple, Optional, Sequence

import dns.exception
import dns.message
import dns.name
import dns.rdatatype

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 65535


class AXFRError(Exception):
    """Brief: DNS AXFR (full zone transfer) error.

    Inputs:
      - message: Short description of the failure.

    Outputs:
      - Exception instance indicating a transport or protocol failure while
        requesting a zone.
    """

    pass


class ServerEndpoint(NamedTuple):
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_endpoint(value: Any, default_port: int = 53) -> ServerEndpoint:
    """Brief: Normalize a configured server into a ServerEndpoint.

    Inputs:
      - value: "host", "host:port", "[v6]:port", a bare IPv6 literal, or a
        mapping with 'host' and optional 'port'.
      - default_port: Port used when none is given.

    Outputs:
      - ServerEndpoint.

    Example:
      >>> parse_endpoint("192.0.2.1:5353")
      ServerEndpoint(host='192.0.2.1', port=5353)
      >>> parse_endpoint("2001:db8::1")
      ServerEndpoint(host='2001:db8::1', port=53)
    """

    if isinstance(value, ServerEndpoint):
        return value
    if isinstance(value, dict):
        if "host" not in value:
            raise ValueError("server entry must include 'host'")
        return ServerEndpoint(str(value["host"]), int(value.get("port", default_port)))

    text = str(value).strip()
    if not text:
        raise ValueError("empty server address")
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep:
            raise ValueError(f"invalid server address {text!r}")
        port = int(rest[1:]) if rest.startswith(":") else default_port
        return ServerEndpoint(host, port)
    try:
        ipaddress.IPv6Address(text)
        return ServerEndpoint(text, default_port)
    except ValueError:
        pass
    host, sep, port_text = text.rpartition(":")
    if sep:
        return ServerEndpoint(host, int(port_text))
    return ServerEndpoint(text, default_port)


class FrameAssembler:
    """Brief: Reassemble length-prefixed DNS messages from a TCP byte stream.

    Inputs:
      - Arbitrary chunks passed to push(); chunk boundaries need not line up
        with message boundaries.

    Outputs:
      - push() returns every frame completed by the chunk, in order.

    Example:
      >>> fa = FrameAssembler()
      >>> fa.push(b"\\x00")
      []
      >>> fa.push(b"\\x02ab\\x00")
      [b'ab']
    """

    def __init__(self) -> None:
        self._header = bytearray()
        self._buf = bytearray()
        self.target = 0

    @property
    def in_progress(self) -> bool:
        return bool(self._header) or self.target > 0

    def push(self, data: bytes) -> List[bytes]:
        frames: List[bytes] = []
        view = memoryview(data)
        off = 0
        while off < len(view):
            if self.target == 0:
                need = 2 - len(self._header)
                self._header += view[off : off + need]
                off += min(need, len(view) - off)
                if len(self._header) < 2:
                    break
                self.target = int.from_bytes(self._header, "big")
                self._header.clear()
                if self.target == 0:
                    raise AXFRError("bad frame length: 0")
                continue

            # Never copy past the declared frame length; the rest of the
            # chunk belongs to the next frame.
            take = min(self.target - len(self._buf), len(view) - off)
            self._buf += view[off : off + take]
            off += take
            if len(self._buf) == self.target:
                frames.append(bytes(self._buf))
                self._buf.clear()
                self.target = 0
        return frames


class AXFRQuery:
    """Brief: One AXFR attempt against a single server.

    Inputs:
      - zone: Zone to transfer.
      - timeout: Idle timeout in seconds for connect and each read.
      - max_messages: Ceiling on the number of messages accepted.

    Outputs:
      - exchange() returns the ordered list of dns.message.Message objects
        making up the transfer.
    """

    def __init__(self, zone: str | dns.name.Name, *, timeout: float, max_messages: int):
        self.zone = dns.name.from_text(zone) if isinstance(zone, str) else zone
        self.timeout = float(timeout)
        self.max_messages = int(max_messages)
        self.id = 0
        self.messages: List[dns.message.Message] = []
        self.assembler = FrameAssembler()

    def build_query(self) -> bytes:
        """Brief: Build the length-prefixed AXFR query and remember its id."""

        q = dns.message.make_query(self.zone, dns.rdatatype.AXFR)
        self.id = q.id
        wire = q.to_wire()
        return len(wire).to_bytes(2, "big") + wire

    def feed(self, data: bytes) -> bool:
        """Brief: Feed received bytes; return True once the closing SOA arrives.

        Inputs:
          - data: Bytes as delivered by the socket.

        Outputs:
          - bool: True when the transfer is complete.

        Raises:
          - AXFRError: on malformed frames, id mismatch, empty answers, a
            missing leading SOA or an oversized transfer.
        """

        for frame in self.assembler.push(data):
            if self._accept(frame):
                return True
        return False

    def _accept(self, wire: bytes) -> bool:
        try:
            msg = dns.message.from_wire(wire, one_rr_per_rrset=True)
        except (dns.exception.DNSException, ValueError) as exc:
            raise AXFRError(f"malformed message: {exc}") from exc

        if msg.id != self.id:
            raise AXFRError("message id does not match")
        if not msg.answer:
            raise AXFRError("empty message")
        if not self.messages and msg.answer[0].rdtype != dns.rdatatype.SOA:
            raise AXFRError("first record must be SOA")
        if len(self.messages) + 1 > self.max_messages:
            raise AXFRError(
                f"transfer is too large (max messages: {self.max_messages})"
            )

        self.messages.append(msg)
        return msg.answer[-1].rdtype == dns.rdatatype.SOA

    async def exchange(self, host: str, port: int) -> List[dns.message.Message]:
        """Brief: Connect, send the query, and collect the transfer.

        Inputs:
          - host: Server host/IP.
          - port: Server TCP port.

        Outputs:
          - list[dns.message.Message]: Messages bounded by SOA records.
        """

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(port)), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            raise AXFRError("timed out connecting") from exc
        except OSError as exc:
            raise AXFRError(f"connect failed: {exc}") from exc

        try:
            writer.write(self.build_query())
            await writer.drain()
            if writer.can_write_eof():
                writer.write_eof()

            while True:
                chunk = await asyncio.wait_for(
                    reader.read(MAX_MESSAGE_SIZE), timeout=self.timeout
                )
                if not chunk:
                    raise AXFRError("closed unexpectedly")
                if self.feed(chunk):
                    return self.messages
        except asyncio.TimeoutError as exc:
            raise AXFRError("timed out") from exc
        except OSError as exc:
            raise AXFRError(f"I/O error: {exc}") from exc
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:  # pragma: no cover - peer already gone
                pass


class AXFRClient:
    """Brief: AXFR requester with ordered round-robin server failover.

    Inputs:
      - servers: Sequence of endpoints (see parse_endpoint for accepted forms).
      - max_attempts: Total attempts across servers before giving up.
      - timeout: Per-attempt idle timeout in seconds.
      - max_messages: Ceiling on messages accepted for one transfer.

    Outputs:
      - query(zone) returns the transfer's message list or raises AXFRError.

    Example:
      >>> client = AXFRClient(["192.0.32.132", "192.0.47.132"])
      >>> # msgs = asyncio.run(client.query("."))
    """

    def __init__(
        self,
        servers: Sequence[Any],
        *,
        max_attempts: int = 6,
        timeout: float = 6.0,
        max_messages: int = 1000,
        log: Optional[logging.Logger] = None,
    ):
        self.servers = [parse_endpoint(s) for s in servers]
        if not self.servers:
            raise ValueError("AXFRClient requires at least one server")
        self.index = 0
        self.max_attempts = max(1, int(max_attempts))
        self.timeout = float(timeout)
        self.max_messages = int(max_messages)
        self.logger = log or logger

    def current_server(self) -> ServerEndpoint:
        return self.servers[self.index]

    def next_server(self) -> ServerEndpoint:
        self.index = (self.index + 1) % len(self.servers)
        return self.servers[self.index]

    async def query(self, zone: str | dns.name.Name) -> List[dns.message.Message]:
        """Brief: Transfer *zone*, failing over between servers sequentially.

        Inputs:
          - zone: Zone name to request.

        Outputs:
          - list[dns.message.Message]: The complete transfer.

        Raises:
          - AXFRError: when every attempt fails.
        """

        server = self.current_server()
        for _ in range(self.max_attempts):
            q = AXFRQuery(zone, timeout=self.timeout, max_messages=self.max_messages)
            try:
                return await q.exchange(server.host, server.port)
            except AXFRError as exc:
                self.logger.warning("Attempt [%s] failed: %s", server, exc)
                server = self.next_server()

        raise AXFRError(
            f"no zone data available for {zone} after {self.max_attempts} attempts"
        )
