from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import hashlib
import re
import subprocess

from asn1crypto import pem, x509

from dinghy.logger import get_console
from dinghy.src.core.errors import MalformedCertificate, TrustStoreUnavailable
from dinghy.src.core.models import Certificate, IdentityKind, SigningIdentity

# Common name prefixes Apple uses for each certificate class
DEVELOPMENT_PREFIXES = ("Apple Development", "iPhone Developer")
DISTRIBUTION_PREFIXES = ("Apple Distribution", "iPhone Distribution")

_IDENTITY_LINE_RE = re.compile(r'^\s*\d+\)\s+([0-9A-Fa-f]{40})\s+"(.+)"\s*$')
_SHA1_LINE_RE = re.compile(r"^SHA-1 hash:\s*([0-9A-Fa-f]{40})\s*$")


@dataclass
class IdentityListing:
    """Identities that could be read, plus the entries that could not"""

    identities: List[SigningIdentity] = field(default_factory=list)
    errors: List[MalformedCertificate] = field(default_factory=list)


def classify_common_name(common_name: str) -> Optional[IdentityKind]:
    if common_name.startswith(DEVELOPMENT_PREFIXES):
        return IdentityKind.DEVELOPMENT
    if common_name.startswith(DISTRIBUTION_PREFIXES):
        return IdentityKind.DISTRIBUTION
    return None


def certificate_from_der(der: bytes) -> Certificate:
    """Read the metadata dinghy needs out of a DER certificate.

    Raises MalformedCertificate when the subject lacks a common name or an
    organizational unit (the team identifier).
    """
    fingerprint = hashlib.sha1(der).hexdigest().upper()
    try:
        cert = x509.Certificate.load(der)
        subject = cert.subject.native
        validity = cert["tbs_certificate"]["validity"]
        not_before = validity["not_before"].native
        not_after = validity["not_after"].native
    except (ValueError, TypeError, KeyError) as e:
        raise MalformedCertificate(fingerprint, f"cannot parse certificate: {e}")

    common_name = _first(subject.get("common_name"))
    org_unit = _first(subject.get("organizational_unit_name"))
    if not common_name:
        raise MalformedCertificate(fingerprint, "subject has no common name")
    if not org_unit:
        raise MalformedCertificate(fingerprint, "subject has no organizational unit")

    return Certificate(
        fingerprint=fingerprint,
        common_name=common_name,
        organizational_unit=org_unit,
        not_before=_naive_utc(not_before),
        not_after=_naive_utc(not_after),
    )


def identity_from_der(der: bytes) -> SigningIdentity:
    certificate = certificate_from_der(der)
    kind = classify_common_name(certificate.common_name)
    if kind is None:
        raise MalformedCertificate(
            certificate.fingerprint,
            f"unrecognised certificate class: {certificate.common_name}",
        )
    return SigningIdentity(certificate=certificate, kind=kind)


def _first(value):
    # Multi-valued RDNs come back as lists
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _naive_utc(value):
    if value is not None and value.tzinfo is not None:
        return (value - value.utcoffset()).replace(tzinfo=None)
    return value


class IdentityStoreReader(ABC):
    """Read-only view of the signing identities available on this machine"""

    @abstractmethod
    def list_identities(self) -> IdentityListing:
        """Enumerate identities; per-entry problems go into the listing's errors"""


class KeychainIdentityStore(IdentityStoreReader):
    """Identities from the macOS keychain, through the security tool"""

    def __init__(self, security_path: str = "security", keychain: Optional[str] = None):
        self.console = get_console()
        self.security_path = security_path
        self.keychain = keychain

    def _run_security(self, *args: str) -> str:
        cmd = [self.security_path, *args]
        if self.keychain:
            cmd.append(self.keychain)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise TrustStoreUnavailable(f"Cannot run {self.security_path}: {e}")
        if result.returncode != 0:
            raise TrustStoreUnavailable(
                f"{' '.join(cmd)} failed ({result.returncode}): {result.stderr.strip()}"
            )
        return result.stdout

    def _usable_fingerprints(self) -> Dict[str, str]:
        """Fingerprints that have a private key usable for code signing"""
        output = self._run_security("find-identity", "-v", "-p", "codesigning")
        usable = {}
        for line in output.splitlines():
            if m := _IDENTITY_LINE_RE.match(line):
                usable[m.group(1).upper()] = m.group(2)
        return usable

    def _certificates(self) -> Dict[str, bytes]:
        """Map of fingerprint to DER for every certificate in the store"""
        output = self._run_security("find-certificate", "-a", "-Z", "-p")
        certs = {}
        current_hash = None
        pem_lines: List[str] = []
        for line in output.splitlines():
            if m := _SHA1_LINE_RE.match(line.strip()):
                current_hash = m.group(1).upper()
                continue
            if line.startswith("-----BEGIN"):
                pem_lines = [line]
            elif pem_lines:
                pem_lines.append(line)
                if line.startswith("-----END"):
                    block = ("\n".join(pem_lines) + "\n").encode()
                    pem_lines = []
                    try:
                        _, _, der = pem.unarmor(block)
                    except ValueError as e:
                        self.console.log(f"[yellow]Skipping unreadable PEM block:[/] {e}")
                        current_hash = None
                        continue
                    fingerprint = current_hash or hashlib.sha1(der).hexdigest().upper()
                    certs[fingerprint] = der
                    current_hash = None
        return certs

    def list_identities(self) -> IdentityListing:
        usable = self._usable_fingerprints()
        certificates = self._certificates()
        listing = IdentityListing()

        for fingerprint, label in usable.items():
            der = certificates.get(fingerprint)
            if der is None:
                listing.errors.append(
                    MalformedCertificate(label, "identity has no matching certificate")
                )
                continue
            try:
                listing.identities.append(identity_from_der(der))
            except MalformedCertificate as e:
                self.console.log(f"[yellow]Skipping identity {label}:[/] {e.reason}")
                listing.errors.append(e)

        self.console.log(
            f"[blue]Found {len(listing.identities)} signing identities[/]"
            + (f" ([yellow]{len(listing.errors)} unreadable[/])" if listing.errors else "")
        )
        return listing
