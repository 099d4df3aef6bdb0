"""
Brief: Global pytest configuration and shared zone fixtures.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys
import time
from types import SimpleNamespace

import pytest

# Ensure 'src' is on sys.path so 'rootxfr' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

import dns.dnssec  # noqa: E402
import dns.message  # noqa: E402
import dns.name  # noqa: E402
import dns.rdataclass  # noqa: E402
import dns.rdatatype  # noqa: E402
import dns.rrset  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402

SOA_TEXT = (
    "a.root-servers.net. nstld.verisign-grs.com. 2024010100 1800 900 604800 86400"
)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


def rr(name: str, rdtype: str, text: str, ttl: int = 86400) -> dns.rrset.RRset:
    """Brief: Build a single-rdata record from presentation text."""
    return dns.rrset.from_text(name, ttl, "IN", rdtype, text)


def base_records():
    """
    Brief: Unsigned records of a tiny root zone in transfer order.

    Outputs:
      - list of records: apex SOA/NS/NSEC, a delegation for 'example.' with
        in-bailiwick glue 'ns.example.'. The closing SOA is
        added by as_messages().
    """
    return [
        rr(".", "SOA", SOA_TEXT),
        rr(".", "NS", "ns.example."),
        rr(".", "NSEC", "example. NS SOA NSEC"),
        rr("example.", "NS", "ns.example."),
        rr("example.", "NSEC", ". NS NSEC"),
        rr("ns.example.", "A", "192.0.2.53"),
        rr("ns.example.", "AAAA", "2001:db8::53"),
    ]


def as_messages(records, per_message: int = 0):
    """
    Brief: Pack records into transfer messages (answer section only).

    Inputs:
      - records: list of records; the closing SOA is appended here.
      - per_message: records per message (0 means a single message).

    Outputs:
      - list[dns.message.Message]
    """
    records = list(records) + [records[0]]
    size = per_message or len(records)
    out = []
    for i in range(0, len(records), size):
        msg = dns.message.Message(id=1234)
        msg.answer.extend(records[i : i + size])
        out.append(msg)
    return out


def sign_records(records):
    """
    Brief: Sign a root zone with fresh ECDSA P-256 KSK/ZSK keys.

    Inputs:
      - records: unsigned records from base_records().

    Outputs:
      - SimpleNamespace(records, messages, keys, ksk, zsk, ds):
          - records: records with DNSKEYs and RRSIGs added (no closing SOA)
          - messages: one-message transfer including the closing SOA
          - keys: {root: DNSKEY RRset} for dns.dnssec.validate
          - ksk/zsk: DNSKEY rdata
          - ds: presentation line of the KSK's SHA-256 DS record
    """
    origin = dns.name.root
    alg = dns.dnssec.Algorithm.ECDSAP256SHA256
    ksk_priv = ec.generate_private_key(ec.SECP256R1())
    zsk_priv = ec.generate_private_key(ec.SECP256R1())
    ksk = dns.dnssec.make_dnskey(ksk_priv.public_key(), alg, flags=257)
    zsk = dns.dnssec.make_dnskey(zsk_priv.public_key(), alg, flags=256)

    dnskeys = dns.rrset.from_rdata_list(origin, 86400, [ksk, zsk])
    inception = time.time() - 3600
    expiration = time.time() + 86400

    # Delegation NS sets and glue stay unsigned.
    unsigned = {(rec.name, rec.rdtype) for rec in records}
    delegations = {
        rec.name
        for rec in records
        if rec.rdtype == dns.rdatatype.NS and rec.name != origin
    }

    out = list(records)
    out.insert(1, dns.rrset.from_rdata_list(origin, 86400, [ksk]))
    out.insert(2, dns.rrset.from_rdata_list(origin, 86400, [zsk]))
    out.insert(
        3,
        dns.rrset.from_rdata(
            origin,
            86400,
            dns.dnssec.sign(
                dnskeys,
                ksk_priv,
                signer=origin,
                dnskey=ksk,
                inception=inception,
                expiration=expiration,
            ),
        ),
    )

    for name, rdtype in sorted(unsigned):
        if rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            continue
        if rdtype == dns.rdatatype.NS and name in delegations:
            continue
        rrset = dns.rrset.RRset(name, dns.rdataclass.IN, rdtype)
        for rec in records:
            if rec.name == name and rec.rdtype == rdtype:
                rrset.update(rec)
        sig = dns.dnssec.sign(
            rrset,
            zsk_priv,
            signer=origin,
            dnskey=zsk,
            inception=inception,
            expiration=expiration,
        )
        out.append(dns.rrset.from_rdata(name, rrset.ttl, sig))

    ds = dns.dnssec.make_ds(origin, ksk, "SHA256")
    return SimpleNamespace(
        records=out,
        messages=as_messages(out),
        keys={origin: dnskeys},
        ksk=ksk,
        zsk=zsk,
        ds=f". IN DS {ds.to_text()}",
    )


@pytest.fixture
def zone_records():
    """Brief: Fresh unsigned tiny root zone records."""
    return base_records()


@pytest.fixture(scope="session")
def signed_zone():
    """Brief: Tiny root zone signed once per session (see sign_records)."""
    return sign_records(base_records())


@pytest.fixture
def make_rr():
    """Brief: Factory fixture exposing rr(name, rdtype, text, ttl=86400)."""
    return rr


@pytest.fixture
def pack_messages():
    """Brief: Factory fixture exposing as_messages(records, per_message=0)."""
    return as_messages


@pytest.fixture
def sign_zone():
    """Brief: Factory fixture exposing sign_records(records)."""
    return sign_records
