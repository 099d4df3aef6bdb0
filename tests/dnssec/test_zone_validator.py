"""
Brief: Tests for rootxfr.dnssec.zone_validator (signatures, glue, NSEC chain).

Inputs:
  - conftest fixtures building a tiny root zone (signed and unsigned).

Outputs:
  - None
"""

from __future__ import annotations

from typing import List

import dns.name
import dns.rdatatype
import pytest

from rootxfr.dnssec.zone_validator import (
    BogusZoneError,
    MergeResult,
    OwnerRecords,
    ZoneValidator,
    verify_rrsets,
)

ROOT = dns.name.root
EXAMPLE = dns.name.from_text("example.")
NS_EXAMPLE = dns.name.from_text("ns.example.")


class _RecordingVerifier:
    """Brief: Stub verifier recording the owners and types it was asked about.

    Inputs:
      - result: bool returned for every call.

    Outputs:
      - calls: list of (owner, sorted rdtype names) tuples.
    """

    def __init__(self, result: bool = True):
        self.result = result
        self.calls: List[tuple] = []

    def __call__(self, records, keys) -> bool:
        owner = records[0].name if records else None
        types = sorted({dns.rdatatype.to_text(rr.rdtype) for rr in records})
        self.calls.append((owner, types))
        return self.result


def _replace(records, name, rdtype, new):
    owner = dns.name.from_text(name)
    rdtype = dns.rdatatype.from_text(rdtype)
    out = []
    for rec in records:
        if rec.name == owner and rec.rdtype == rdtype:
            out.append(new)
        else:
            out.append(rec)
    return out


def test_signed_zone_validates(signed_zone) -> None:
    """Brief: A correctly signed zone yields names, glue and the NSEC chain.

    Inputs:
      - signed_zone fixture (ECDSA P-256 keys, dns.dnssec.sign).

    Outputs:
      - None; asserts MergeResult contents.
    """

    result = ZoneValidator().verify_zone(signed_zone.messages, signed_zone.keys)

    assert isinstance(result, MergeResult)
    assert set(result.names) == {ROOT, EXAMPLE, NS_EXAMPLE}
    assert result.glue == {NS_EXAMPLE}
    assert list(result.chain) == [ROOT, EXAMPLE]
    assert result.names[EXAMPLE].delegation is True
    assert result.names[ROOT].delegation is False


def test_tampered_record_fails_signature(signed_zone, make_rr, pack_messages) -> None:
    records = _replace(
        signed_zone.records, "example.", "NSEC", make_rr("example.", "NSEC", ". NS")
    )

    with pytest.raises(BogusZoneError) as excinfo:
        ZoneValidator().verify_zone(pack_messages(records), signed_zone.keys)

    assert str(excinfo.value) == "bogus: unable to validate zone data for example."
    assert excinfo.value.owner == EXAMPLE


def test_wrong_keys_fail_at_apex(signed_zone, sign_zone, zone_records) -> None:
    other = sign_zone(zone_records)
    with pytest.raises(BogusZoneError, match=r"unable to validate zone data for \.$"):
        ZoneValidator().verify_zone(signed_zone.messages, other.keys)


def test_missing_signature_is_rejected(signed_zone, make_rr) -> None:
    records = [
        make_rr(".", "SOA", "a. b. 1 2 3 4 5"),
        make_rr(".", "NS", "a."),
    ]
    assert verify_rrsets(records, signed_zone.keys) is False


def test_nsec3_is_rejected(zone_records, make_rr, pack_messages) -> None:
    zone_records.append(
        make_rr(
            "0p9mhaveqvm6t7vbl5lop2u3t2rp3tom.",
            "NSEC3",
            "1 0 0 - 2T7B4G4VSA5SMI47K61MV5BV1A22BOJR A RRSIG",
        )
    )
    with pytest.raises(BogusZoneError, match="NSEC3 not supported"):
        ZoneValidator(verifier=_RecordingVerifier()).verify_zone(
            pack_messages(zone_records), {}
        )


def test_glue_is_not_verified_and_delegation_ns_is_skipped(
    zone_records, pack_messages
) -> None:
    """Brief: Glue skips signature checks; delegation NS sets are excluded.

    Inputs:
      - Unsigned tiny root zone with a recording stub verifier.

    Outputs:
      - None; asserts which owners and types reached the verifier.
    """

    verifier = _RecordingVerifier()
    result = ZoneValidator(verifier=verifier).verify_zone(
        pack_messages(zone_records), {}
    )

    owners = [owner for owner, _ in verifier.calls]
    assert owners == [ROOT, EXAMPLE]
    assert dict(verifier.calls)[EXAMPLE] == ["NSEC"]
    assert dict(verifier.calls)[ROOT] == ["NS", "NSEC", "SOA"]
    assert result.glue == {NS_EXAMPLE}


def test_ns_target_outside_delegation_is_not_glue(
    zone_records, make_rr, pack_messages
) -> None:
    # 'ns.other.' is an NS target but 'other.' is not a delegation here.
    zone_records[1] = make_rr(".", "NS", "ns.other.")
    zone_records.insert(2, make_rr("ns.other.", "A", "192.0.2.99"))
    verifier = _RecordingVerifier()

    result = ZoneValidator(verifier=verifier).verify_zone(
        pack_messages(zone_records), {}
    )
    assert dns.name.from_text("ns.other.") not in result.glue
    assert dns.name.from_text("ns.other.") in [owner for owner, _ in verifier.calls]


def test_address_owner_with_other_types_is_not_glue(
    zone_records, make_rr, pack_messages
) -> None:
    zone_records.append(make_rr("ns.example.", "TXT", '"not glue"'))
    verifier = _RecordingVerifier()
    result = ZoneValidator(verifier=verifier).verify_zone(
        pack_messages(zone_records), {}
    )
    assert NS_EXAMPLE not in result.glue
    assert NS_EXAMPLE in [owner for owner, _ in verifier.calls]


def test_chain_with_missing_owner(zone_records, make_rr, pack_messages) -> None:
    records = _replace(
        zone_records, "example.", "NSEC", make_rr("example.", "NSEC", "missing. NS NSEC")
    )
    with pytest.raises(BogusZoneError, match=r"invalid data for missing\.$"):
        ZoneValidator(verifier=_RecordingVerifier()).verify_zone(
            pack_messages(records), {}
        )


def test_chain_loop_is_rejected(zone_records, make_rr, pack_messages) -> None:
    records = _replace(
        zone_records,
        "example.",
        "NSEC",
        make_rr("example.", "NSEC", "example. NS NSEC"),
    )
    with pytest.raises(BogusZoneError, match=r"bad NSEC chain for example\.$"):
        ZoneValidator(verifier=_RecordingVerifier()).verify_zone(
            pack_messages(records), {}
        )


def test_duplicate_nsec_is_rejected(zone_records, make_rr, pack_messages) -> None:
    zone_records.append(make_rr("example.", "NSEC", "z. NS NSEC"))
    with pytest.raises(BogusZoneError, match="NSEC must exist exactly once"):
        ZoneValidator(verifier=_RecordingVerifier()).verify_zone(
            pack_messages(zone_records), {}
        )


def test_bitmap_type_must_exist(zone_records, make_rr, pack_messages) -> None:
    records = _replace(
        zone_records, ".", "NSEC", make_rr(".", "NSEC", "example. NS SOA NSEC DNSKEY")
    )
    with pytest.raises(BogusZoneError, match=r"could not find type DNSKEY for \.$"):
        ZoneValidator(verifier=_RecordingVerifier()).verify_zone(
            pack_messages(records), {}
        )


def test_delegation_requires_ns_in_bitmap(zone_records, make_rr, pack_messages) -> None:
    records = _replace(
        zone_records, "example.", "NSEC", make_rr("example.", "NSEC", ". NSEC")
    )
    with pytest.raises(BogusZoneError, match="delegation yet no NS in NSEC bitmap"):
        ZoneValidator(verifier=_RecordingVerifier()).verify_zone(
            pack_messages(records), {}
        )


def test_verify_failure_names_owner(zone_records, pack_messages) -> None:
    with pytest.raises(BogusZoneError) as excinfo:
        ZoneValidator(verifier=_RecordingVerifier(result=False)).verify_zone(
            pack_messages(zone_records), {}
        )
    assert excinfo.value.owner == ROOT
    assert excinfo.value.reason == "unable to validate zone data"


def test_merge_result_copy_is_independent(make_rr) -> None:
    original = MergeResult(
        names={EXAMPLE: OwnerRecords(True, [make_rr("example.", "NS", "ns.example.")])},
        glue={NS_EXAMPLE},
        chain={ROOT: None, EXAMPLE: None},
    )
    copy = original.copy()
    del copy.chain[EXAMPLE]
    copy.glue.discard(NS_EXAMPLE)
    copy.names[EXAMPLE].records.clear()

    assert list(original.chain) == [ROOT, EXAMPLE]
    assert original.glue == {NS_EXAMPLE}
    assert len(original.names[EXAMPLE].records) == 1
    assert MergeResult.empty().names == {}
