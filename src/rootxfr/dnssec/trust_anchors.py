"""Trust anchors for validating a transferred root zone.

Brief:
  Derive the trusted DNSKEY set for a fetched zone: the apex DNSKEY RRset
  must contain a key matching a configured anchor (DS digest or DNSKEY) and
  must be self-signed by that key. The key tags of the last trusted set can
  be persisted to a small JSON state file so a key rollover is noticed and
  logged across restarts.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import dns.dnssec
import dns.exception
import dns.message
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from rootxfr.dnssec.zone_validator import BogusZoneError
from rootxfr.utils.records import message_records

logger = logging.getLogger(__name__)

# Root KSK-2017 and KSK-2024 DS records.
# Source: https://data.iana.org/root-anchors/root-anchors.xml
ROOT_ANCHORS = [
    ". IN DS 20326 8 2 E06D44B80B8F1D39A95C0B0D7C65D08458E880409BBC683457104237C7F8EC8D",
    ". IN DS 38696 8 2 683D2D0ACB8C9B712A1948B27F741219298D0A450D612C483AF444A4C0FB2B16",
]


@dataclass
class TrustedKeyEntry:
    """Persisted record of one trusted DNSKEY.

    Inputs/fields:
      - key_tag: Numeric key ID (dns.dnssec.key_id).
      - algorithm: DNSKEY algorithm number.
      - flags: DNSKEY flags (257 KSK, 256 ZSK).
      - first_seen: ISO 8601 timestamp when the key was first trusted.
      - last_seen: ISO 8601 timestamp of the latest validation using it.
    """

    key_tag: int
    algorithm: int
    flags: int
    first_seen: str
    last_seen: str


Store = Dict[str, Dict[str, List[Dict]]]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def load_store(path: Optional[str]) -> Store:
    """Load the trusted-key state file.

    Inputs:
      - path: Filesystem path of the JSON state file.

    Outputs:
      - dict mapping zone name to {'keys': [...]}. Returns an empty store when
        the file does not exist or is not a JSON object.
    """

    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable trust state %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def save_store(path: Optional[str], store: Store) -> None:
    """Persist the trusted-key state file with a simple atomic replace."""

    if not path:
        return
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    tmp_path = path + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(store, f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)


def parse_anchor(line: str) -> tuple[dns.name.Name, dns.rdata.Rdata]:
    """Brief: Parse a DS or DNSKEY anchor in presentation form.

    Inputs:
      - line: e.g. ``". IN DS 20326 8 2 E06D..."`` or
        ``". 172800 IN DNSKEY 257 3 8 AwEAA..."``.

    Outputs:
      - (owner, rdata) tuple.

    Example:
      >>> owner, rd = parse_anchor(ROOT_ANCHORS[0])
      >>> rd.key_tag
      20326
    """

    tokens = line.split()
    for i, tok in enumerate(tokens):
        upper = tok.upper()
        if upper in ("DS", "DNSKEY") and i > 0:
            owner = dns.name.from_text(tokens[0])
            rdata = dns.rdata.from_text(
                dns.rdataclass.IN,
                dns.rdatatype.from_text(upper),
                " ".join(tokens[i + 1 :]),
            )
            return owner, rdata
    raise ValueError(f"trust anchor must be a DS or DNSKEY record: {line!r}")


def key_tags(keys: Iterable[dns.rdata.Rdata]) -> List[int]:
    return sorted(dns.dnssec.key_id(k) for k in keys)


class TrustAnchors:
    """Brief: Derive trusted zone keys from configured anchors.

    Inputs:
      - anchors: DS/DNSKEY presentation lines; defaults to the IANA root
        anchors.
      - state_file: Optional JSON path used to remember trusted key tags.

    Outputs:
      - trusted_keys(messages, origin) -> {origin: DNSKEY RRset}.
    """

    def __init__(
        self,
        anchors: Optional[Iterable[str]] = None,
        *,
        state_file: Optional[str] = None,
    ):
        lines = list(anchors) if anchors else list(ROOT_ANCHORS)
        self.anchors = [parse_anchor(line) for line in lines]
        self.state_file = state_file

    def _is_anchored(self, origin: dns.name.Name, key: dns.rdata.Rdata) -> bool:
        for owner, anchor in self.anchors:
            if owner != origin:
                continue
            if anchor.rdtype == dns.rdatatype.DNSKEY:
                if anchor == key:
                    return True
                continue
            if anchor.key_tag != dns.dnssec.key_id(key):
                continue
            try:
                ds = dns.dnssec.make_ds(origin, key, anchor.digest_type)
            except (dns.exception.DNSException, ValueError):
                continue
            if ds == anchor:
                return True
        return False

    def trusted_keys(
        self,
        messages: Iterable[dns.message.Message],
        origin: str | dns.name.Name = dns.name.root,
    ) -> Dict[dns.name.Name, dns.rrset.RRset]:
        """Brief: Return the zone's DNSKEY set once it is tied to an anchor.

        Inputs:
          - messages: Transfer messages carrying the apex DNSKEY and RRSIGs.
          - origin: Zone origin.

        Outputs:
          - {origin: DNSKEY RRset}, suitable for dns.dnssec.validate.

        Raises:
          - BogusZoneError: when no DNSKEY matches an anchor or the DNSKEY set
            is not signed by an anchored key.
        """

        if isinstance(origin, str):
            origin = dns.name.from_text(origin)

        dnskeys = dns.rrset.RRset(origin, dns.rdataclass.IN, dns.rdatatype.DNSKEY)
        rrsigs = dns.rrset.RRset(
            origin, dns.rdataclass.IN, dns.rdatatype.RRSIG, dns.rdatatype.DNSKEY
        )
        for rr in message_records(messages):
            if rr.name != origin:
                continue
            if rr.rdtype == dns.rdatatype.DNSKEY:
                dnskeys.add(rr[0], rr.ttl)
            elif (
                rr.rdtype == dns.rdatatype.RRSIG
                and rr[0].type_covered == dns.rdatatype.DNSKEY
            ):
                rrsigs.add(rr[0], rr.ttl)

        if not dnskeys:
            raise BogusZoneError("no DNSKEY at zone apex", origin)

        anchored = dns.rrset.RRset(origin, dns.rdataclass.IN, dns.rdatatype.DNSKEY)
        for key in dnskeys:
            if self._is_anchored(origin, key):
                anchored.add(key, dnskeys.ttl)
        if not anchored:
            raise BogusZoneError("no DNSKEY matches a trust anchor", origin)

        try:
            dns.dnssec.validate(dnskeys, rrsigs, {origin: anchored})
        except dns.dnssec.ValidationFailure as exc:
            raise BogusZoneError(
                f"DNSKEY set not signed by anchor ({exc})", origin
            ) from exc

        self.remember(origin, dnskeys)
        return {origin: dnskeys}

    def remember(self, origin: dns.name.Name, dnskeys: dns.rrset.RRset) -> bool:
        """Brief: Record the trusted key tags; return True when they changed."""

        tags = key_tags(dnskeys)
        if not self.state_file:
            logger.debug("Trusted keys for %s: %s", origin, tags)
            return False

        store = load_store(self.state_file)
        zone = origin.to_text()
        bucket = store.setdefault(zone, {"keys": []})
        previous = {e.get("key_tag"): e for e in bucket.get("keys", [])}
        now = _now_utc().isoformat()

        entries: List[Dict] = []
        for key in dnskeys:
            tag = dns.dnssec.key_id(key)
            first_seen = previous.get(tag, {}).get("first_seen", now)
            entries.append(
                asdict(
                    TrustedKeyEntry(
                        key_tag=tag,
                        algorithm=int(key.algorithm),
                        flags=int(key.flags),
                        first_seen=first_seen,
                        last_seen=now,
                    )
                )
            )

        changed = sorted(previous) != tags
        if changed and previous:
            logger.info(
                "Key rollover detected for %s: %s -> %s", zone, sorted(previous), tags
            )
        bucket["keys"] = entries
        save_store(self.state_file, store)
        return changed
