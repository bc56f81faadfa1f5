from datetime import datetime
import hashlib
import subprocess

import pytest
from asn1crypto import pem

from dinghy.src.core.errors import MalformedCertificate, TrustStoreUnavailable
from dinghy.src.core.models import IdentityKind
from dinghy.src.signing import identity_store
from dinghy.src.signing.identity_store import (
    KeychainIdentityStore,
    certificate_from_der,
    classify_common_name,
    identity_from_der,
)

from .conftest import TEAM, build_certificate_der


def sha1(der: bytes) -> str:
    return hashlib.sha1(der).hexdigest().upper()


@pytest.mark.parametrize(
    "name, kind",
    [
        ("Apple Development: Jane Doe (XYZ)", IdentityKind.DEVELOPMENT),
        ("iPhone Developer: Jane Doe (XYZ)", IdentityKind.DEVELOPMENT),
        ("Apple Distribution: Example Corp (TEAM123456)", IdentityKind.DISTRIBUTION),
        ("iPhone Distribution: Example Corp", IdentityKind.DISTRIBUTION),
        ("Developer ID Application: Example Corp", None),
    ],
)
def test_classify_common_name(name, kind):
    assert classify_common_name(name) is kind


def test_certificate_from_der():
    der = build_certificate_der()
    cert = certificate_from_der(der)

    assert cert.fingerprint == sha1(der)
    assert cert.common_name == "Apple Development: Jane Doe (XYZ)"
    assert cert.organizational_unit == TEAM
    assert cert.not_before == datetime(2025, 1, 1)
    assert cert.not_after == datetime(2027, 1, 1)
    assert cert.not_after.tzinfo is None


def test_certificate_without_team_is_malformed():
    der = build_certificate_der(org_unit=None)
    with pytest.raises(MalformedCertificate) as exc:
        certificate_from_der(der)
    assert exc.value.entry == sha1(der)
    assert "organizational unit" in exc.value.reason


def test_certificate_without_common_name_is_malformed():
    with pytest.raises(MalformedCertificate):
        certificate_from_der(build_certificate_der(common_name=None))


def test_unrecognised_class_is_malformed():
    with pytest.raises(MalformedCertificate):
        identity_from_der(build_certificate_der(common_name="Developer ID Application: Example"))


def test_garbage_der_is_malformed():
    with pytest.raises(MalformedCertificate):
        certificate_from_der(b"\x30\x03\x02\x01")


def keychain_output(entries):
    """find-certificate -a -Z -p style output for (der, with_hash) entries"""
    blocks = []
    for der in entries:
        blocks.append(f"SHA-256 hash: {'0' * 64}\nSHA-1 hash: {sha1(der)}\n")
        blocks.append(pem.armor("CERTIFICATE", der).decode())
    return "".join(blocks)


def identity_output(entries):
    lines = [f'  {i}) {sha1(der)} "{label}"' for i, (der, label) in enumerate(entries, 1)]
    lines.append(f"     {len(entries)} valid identities found")
    return "\n".join(lines) + "\n"


def fake_security(monkeypatch, find_identity, find_certificate, returncode=0):
    calls = []

    def run(cmd, capture_output, text):
        calls.append(cmd)
        stdout = find_identity if cmd[1] == "find-identity" else find_certificate
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="boom" if returncode else "")

    monkeypatch.setattr(identity_store.subprocess, "run", run)
    return calls


def test_keychain_lists_identities(monkeypatch):
    dev = build_certificate_der()
    dist = build_certificate_der(common_name="Apple Distribution: Example Corp (TEAM123456)")
    no_key = build_certificate_der(common_name="Apple Development: Other (ABC)")

    calls = fake_security(
        monkeypatch,
        identity_output([(dev, "Apple Development: Jane Doe (XYZ)"), (dist, "Apple Distribution: Example")]),
        keychain_output([dev, dist, no_key]),
    )

    listing = KeychainIdentityStore(keychain="login.keychain-db").list_identities()

    assert [i.kind for i in listing.identities] == [IdentityKind.DEVELOPMENT, IdentityKind.DISTRIBUTION]
    assert [i.fingerprint for i in listing.identities] == [sha1(dev), sha1(dist)]
    assert listing.errors == []
    assert calls[0] == ["security", "find-identity", "-v", "-p", "codesigning", "login.keychain-db"]


def test_keychain_partial_failure(monkeypatch):
    good = build_certificate_der()
    no_team = build_certificate_der(org_unit=None)
    missing = build_certificate_der(common_name="Apple Development: Missing (M)")

    fake_security(
        monkeypatch,
        identity_output([(good, "good"), (no_team, "no team"), (missing, "missing")]),
        keychain_output([good, no_team]),
    )

    listing = KeychainIdentityStore().list_identities()

    assert [i.fingerprint for i in listing.identities] == [sha1(good)]
    assert len(listing.errors) == 2
    assert {e.entry for e in listing.errors} == {sha1(no_team), "missing"}


def test_keychain_unavailable(monkeypatch):
    fake_security(monkeypatch, "", "", returncode=1)
    with pytest.raises(TrustStoreUnavailable):
        KeychainIdentityStore().list_identities()


def test_security_tool_missing(monkeypatch):
    def run(cmd, capture_output, text):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(identity_store.subprocess, "run", run)
    with pytest.raises(TrustStoreUnavailable):
        KeychainIdentityStore(security_path="/nonexistent/security").list_identities()
