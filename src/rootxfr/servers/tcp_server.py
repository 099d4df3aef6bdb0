import asyncio
import logging

from rootxfr.dnssec.zone_validator import BogusZoneError
from rootxfr.servers.axfr import AXFRResponder, servfail
from rootxfr.servers.writer import AXFRWriteError
from rootxfr.transports.axfr import AXFRError

logger = logging.getLogger(__name__)


async def _read_exact(reader: asyncio.StreamReader, n: int) -> bytes:
    """
    Read exactly n bytes from an asyncio StreamReader.

    Inputs:
      - reader: asyncio.StreamReader
      - n: Number of bytes to read
    Outputs:
      - bytes: Exactly n bytes unless EOF occurs early.

    Example:
      >>> await _read_exact(reader, 2)
    """
    data = b""
    while len(data) < n:
        chunk = await reader.read(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _frame(wire: bytes) -> bytes:
    return len(wire).to_bytes(2, "big") + wire


async def _handle_conn(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    responder: AXFRResponder,
    idle_timeout: float = 15.0,
) -> None:
    """
    Handle a single DNS-over-TCP connection carrying transfer requests.

    Inputs:
      - reader: StreamReader for the connection
      - writer: StreamWriter for the connection
      - responder: AXFRResponder deciding on and streaming transfers
      - idle_timeout: Seconds before closing an idle connection
    Outputs:
      - None

    Example:
      >>> await _handle_conn(reader, writer, responder)
    """
    peer = writer.get_extra_info("peername")
    client_ip = peer[0] if isinstance(peer, tuple) else "0.0.0.0"

    async def send(wire: bytes) -> bool:
        writer.write(_frame(wire))
        await writer.drain()
        return not writer.is_closing()

    try:
        while True:
            hdr = await asyncio.wait_for(_read_exact(reader, 2), timeout=idle_timeout)
            if len(hdr) != 2:
                break
            ln = int.from_bytes(hdr, byteorder="big")
            if ln <= 0:
                break
            query = await asyncio.wait_for(
                _read_exact(reader, ln), timeout=idle_timeout
            )
            if len(query) != ln:
                break

            refusal = responder.refusal(query, client_ip, "tcp")
            if refusal is not None:
                if not refusal:
                    break
                await send(refusal)
                continue

            try:
                await responder.send_axfr(query, client_ip, send)
            except AXFRWriteError as exc:
                logger.error("Zone transfer to %s failed: %s", client_ip, exc)
                break
            except (AXFRError, BogusZoneError) as exc:
                logger.error("Zone transfer to %s aborted: %s", client_ip, exc)
                await send(servfail(query))
                break
    except asyncio.TimeoutError:
        logger.debug("Closing idle connection from %s", client_ip)
    except (ConnectionError, OSError) as exc:
        logger.debug("Connection from %s closed: %s", client_ip, exc)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):  # pragma: no cover - peer already gone
            pass


async def serve_tcp(
    host: str, port: int, responder: AXFRResponder, *, idle_timeout: float = 15.0
) -> None:
    """
    Serve zone transfers over TCP on host:port.

    Inputs:
      - host: Listen address
      - port: Listen port
      - responder: AXFRResponder handling each request
      - idle_timeout: Seconds before an idle connection is closed
    Outputs:
      - None (runs forever)

    Example:
      >>> asyncio.run(serve_tcp('127.0.0.1', 5353, responder))
    """
    server = await asyncio.start_server(
        lambda r, w: _handle_conn(r, w, responder, idle_timeout), host, port
    )
    logger.info("Listening for zone transfers on %s:%d/tcp", host, port)
    async with server:
        await server.serve_forever()
