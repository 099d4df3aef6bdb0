import logging
import socketserver
from typing import Optional

from rootxfr.servers.axfr import AXFRResponder

logger = logging.getLogger(__name__)


class _UDPHandler(socketserver.BaseRequestHandler):
    """
    Brief: UDP handler answering transfer requests with an explicit refusal.

    Inputs:
    - request: (data, socket) tuple provided by socketserver
    - client_address: peer address

    Outputs:
    - None

    Notes:
    - Zone transfers are stream-only; every request gets REFUSED (or NOTIMP
      for other query types) rather than being silently dropped.
    """

    responder: Optional[AXFRResponder] = None

    def handle(self) -> None:
        data, sock = self.request  # type: ignore
        peer_ip = (
            self.client_address[0]
            if isinstance(self.client_address, tuple)
            else "0.0.0.0"
        )
        if self.responder is None:
            return
        resp = self.responder.refusal(data, peer_ip, "udp")
        if not resp:
            return
        try:
            sock.sendto(resp, self.client_address)
        except OSError as exc:
            logger.debug("Failed to send UDP refusal to %s: %s", peer_ip, exc)


def make_udp_server(
    host: str, port: int, responder: AXFRResponder
) -> socketserver.ThreadingUDPServer:
    """
    Brief: Build a ThreadingUDPServer bound to host:port.

    Inputs:
    - host: listen address
    - port: listen port
    - responder: AXFRResponder used to build refusals

    Outputs:
    - socketserver.ThreadingUDPServer (not yet serving)
    """
    handler_cls = type("UDPHandler", (_UDPHandler,), {"responder": responder})
    server = socketserver.ThreadingUDPServer((host, port), handler_cls)
    server.daemon_threads = True
    return server
