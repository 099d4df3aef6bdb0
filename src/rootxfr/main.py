from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import threading
from typing import List, Optional

import dns.exception

from .config.config_parser import AppConfig, AXFRConfig, load_config
from .config.logging_config import init_logging
from .dnssec.trust_anchors import TrustAnchors
from .dnssec.zone_validator import BogusZoneError
from .external_zone import ExternalZone
from .servers.axfr import AXFRResponder
from .servers.tcp_server import serve_tcp
from .servers.udp_server import make_udp_server
from .stores.zonefile import ZoneFileStore
from .transports.axfr import AXFRClient, AXFRError

logger = logging.getLogger("rootxfr.main")


def build_external(axfr_cfg: AXFRConfig) -> Optional[ExternalZone]:
    """
    Brief: Build the external zone fetcher when merging is enabled.

    Inputs:
      - axfr_cfg: AXFRConfig section of the application config.

    Outputs:
      - ExternalZone, or None when axfr.merge.enabled is false.
    """
    merge = axfr_cfg.merge
    if not merge.enabled:
        return None
    client = AXFRClient(
        merge.servers,
        max_attempts=merge.max_attempts,
        timeout=merge.timeout_ms / 1000.0,
        max_messages=merge.max_messages,
    )
    anchors = TrustAnchors(merge.trust_anchors or None, state_file=merge.state_file)
    return ExternalZone(
        client,
        anchors,
        origin=axfr_cfg.origin,
        refresh_interval=merge.refresh_interval,
    )


def build_responder(
    cfg: AppConfig, store, external: Optional[ExternalZone]
) -> AXFRResponder:
    axfr = cfg.axfr
    return AXFRResponder(
        store,
        allow=axfr.allow,
        chunk_length=axfr.chunk_length,
        external=external,
        prefer=axfr.merge.prefer,
        origin=axfr.origin,
    )


async def run_listeners(
    cfg: AppConfig,
    responder: AXFRResponder,
    external: Optional[ExternalZone] = None,
) -> None:
    """
    Brief: Run the configured listeners until a stop signal arrives.

    Inputs:
      - cfg: AppConfig with listen.tcp / listen.udp sections.
      - responder: AXFRResponder shared by both listeners.
      - external: Optional ExternalZone invalidated on SIGUSR1.

    Outputs:
      - None. Returns after SIGTERM/SIGHUP; re-raises listener failures
        (e.g. OSError when a port cannot be bound).
    """
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    try:
        loop.add_signal_handler(signal.SIGTERM, stop.set)
        loop.add_signal_handler(signal.SIGHUP, stop.set)
        if external is not None:
            loop.add_signal_handler(signal.SIGUSR1, external.invalidate)
            logger.debug("Installed SIGUSR1 handler to refetch the external zone")
    except (NotImplementedError, RuntimeError):  # pragma: no cover - platform
        logger.warning("Could not install signal handlers on this platform")

    udp_server = None
    if cfg.listen.udp.enabled:
        udp = cfg.listen.udp
        udp_server = make_udp_server(udp.host, udp.port, responder)
        logger.info("Starting UDP listener on %s:%d", udp.host, udp.port)
        threading.Thread(
            target=udp_server.serve_forever, name="rootxfr-udp", daemon=True
        ).start()

    tasks = [asyncio.ensure_future(stop.wait())]
    if cfg.listen.tcp.enabled:
        tcp = cfg.listen.tcp
        logger.info("Starting TCP listener on %s:%d", tcp.host, tcp.port)
        tasks.append(
            asyncio.ensure_future(
                serve_tcp(
                    tcp.host, tcp.port, responder, idle_timeout=cfg.axfr.idle_timeout
                )
            )
        )

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            task.result()
    finally:
        if udp_server is not None:
            udp_server.shutdown()
            udp_server.server_close()


def check_external(external: ExternalZone) -> int:
    """
    Brief: Fetch and validate the external zone once and print a summary.

    Outputs:
      - 0 when the zone validated, 1 otherwise.
    """
    try:
        result = asyncio.run(external.fetch())
    except (AXFRError, BogusZoneError) as exc:
        print(f"External zone check failed: {exc}")
        return 1
    print(
        f"{external.origin}: {len(result.names)} owners, "
        f"{len(result.glue)} glue, {len(result.chain)} in NSEC chain"
    )
    return 0


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the zone transfer server.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on clean shutdown, 1 on configuration or startup
        errors.

    Example use:
        CLI:
            rootxfr --config config.yaml
            rootxfr --config config.yaml --check
    """
    parser = argparse.ArgumentParser(description="Root zone AXFR server")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Fetch and validate the external zone once, print a summary and exit.",
    )
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as exc:
        print(str(exc))
        return 1

    init_logging(cfg.logging)
    logger.info("Loaded config from %s", args.config)

    external = build_external(cfg.axfr)

    if args.check:
        if external is None:
            print("axfr.merge.enabled is false; nothing to check")
            return 1
        return check_external(external)

    if not (cfg.listen.tcp.enabled or cfg.listen.udp.enabled):
        logger.error("No listeners enabled; enable listen.tcp and/or listen.udp")
        return 1

    try:
        store = ZoneFileStore(cfg.axfr.zone_file, origin=cfg.axfr.origin)
    except (OSError, dns.exception.DNSException) as exc:
        logger.error("Failed to load zone file %s: %s", cfg.axfr.zone_file, exc)
        return 1

    responder = build_responder(cfg, store, external)

    try:
        asyncio.run(run_listeners(cfg, responder, external))
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    except OSError as exc:
        logger.error("Listener failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
