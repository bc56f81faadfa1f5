from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional
import hashlib
import plistlib

from asn1crypto.cms import ContentInfo

from dinghy.logger import get_console
from dinghy.src.core.errors import ProfileDecodeError
from dinghy.src.core.models import ProvisioningProfile, utcnow
from dinghy.src.utils.plist import OrderPreservingDict

PROFILE_SUFFIX = ".mobileprovision"


@dataclass
class ProfileListing:
    """Profiles that could be decoded, plus the files that could not"""

    profiles: List[ProvisioningProfile] = field(default_factory=list)
    errors: List[ProfileDecodeError] = field(default_factory=list)


def dump_prov(payload: bytes) -> dict:
    """Extract the plist declaration from a profile's CMS envelope.

    The envelope's signature is not checked; the profile directory is
    trusted by the OS already.
    """
    content_info = ContentInfo.load(payload)
    signed_data = content_info["content"]
    plist_data = signed_data["encap_content_info"]["content"].native
    return plistlib.loads(plist_data, dict_type=OrderPreservingDict)


def _team_identifier(data: dict, entitlements: dict) -> Optional[str]:
    for key in ("TeamIdentifier", "ApplicationIdentifierPrefix"):
        values = data.get(key)
        if isinstance(values, list) and values and isinstance(values[0], str):
            return values[0]
    team = entitlements.get("com.apple.developer.team-identifier")
    if isinstance(team, str) and team:
        return team
    return None


def _strip_team_prefix(app_id: str, data: dict, team: str) -> str:
    """TEAMID.com.example.* -> com.example.*"""
    prefixes = [team] + [p for p in data.get("ApplicationIdentifierPrefix", []) if isinstance(p, str)]
    for prefix in prefixes:
        if app_id.startswith(prefix + "."):
            return app_id[len(prefix) + 1 :]
    return app_id


def parse_profile(path: Path, payload: bytes, now: Optional[datetime] = None) -> ProvisioningProfile:
    """Turn a raw profile file into a ProvisioningProfile, or raise ProfileDecodeError"""
    try:
        data = dump_prov(payload)
    except (ValueError, TypeError, KeyError, plistlib.InvalidFileException) as e:
        raise ProfileDecodeError(path, f"not a signed profile envelope: {e}")

    if not isinstance(data, dict):
        raise ProfileDecodeError(path, "payload is not a dictionary")

    entitlements = data.get("Entitlements")
    if not isinstance(entitlements, dict):
        raise ProfileDecodeError(path, "missing Entitlements")

    app_id = entitlements.get("application-identifier")
    if not isinstance(app_id, str) or not app_id:
        raise ProfileDecodeError(path, "missing application-identifier entitlement")

    team = _team_identifier(data, entitlements)
    if not team:
        raise ProfileDecodeError(path, "missing team identifier")

    expiration = data.get("ExpirationDate")
    if not isinstance(expiration, datetime):
        raise ProfileDecodeError(path, "missing ExpirationDate")

    # Distribution profiles carry no device list; enterprise ones say so explicitly
    devices = data.get("ProvisionedDevices")
    if data.get("ProvisionsAllDevices") is True or devices is None:
        authorized = None
    elif isinstance(devices, list):
        authorized = frozenset(str(d) for d in devices)
    else:
        raise ProfileDecodeError(path, "ProvisionedDevices is not a list")

    fingerprints = tuple(
        hashlib.sha1(bytes(cert)).hexdigest().upper()
        for cert in data.get("DeveloperCertificates", [])
        if isinstance(cert, (bytes, bytearray))
    )

    return ProvisioningProfile(
        path=Path(path),
        name=str(data.get("Name", Path(path).stem)),
        uuid=str(data.get("UUID", "")),
        application_identifier_pattern=_strip_team_prefix(app_id, data, team),
        team_identifier=team,
        authorized_devices=authorized,
        entitlements=entitlements,
        expiration_date=expiration,
        payload=payload,
        certificate_fingerprints=fingerprints,
        expired=expiration <= (now or utcnow()),
    )


class ProvisioningProfileReader:
    """Reads every provisioning profile in a directory"""

    def __init__(self, default_directory: Optional[Path] = None):
        self.console = get_console()
        self.default_directory = Path(default_directory) if default_directory else None

    def decode_profile(self, path: Path, now: Optional[datetime] = None) -> ProvisioningProfile:
        try:
            payload = Path(path).read_bytes()
        except OSError as e:
            raise ProfileDecodeError(path, f"cannot read file: {e}")
        return parse_profile(path, payload, now)

    def list_profiles(self, directory: Optional[Path] = None, now: Optional[datetime] = None) -> ProfileListing:
        directory = Path(directory) if directory else self.default_directory
        listing = ProfileListing()
        if directory is None or not directory.is_dir():
            self.console.log(f"[yellow]Provisioning profile directory not found:[/] {directory}")
            return listing

        now = now or utcnow()
        for path in sorted(directory.glob(f"*{PROFILE_SUFFIX}")):
            try:
                profile = self.decode_profile(path, now)
            except ProfileDecodeError as e:
                self.console.log(f"[yellow]Skipping profile {path.name}:[/] {e.reason}")
                listing.errors.append(e)
                continue
            listing.profiles.append(profile)

        expired = sum(1 for p in listing.profiles if p.expired)
        self.console.log(
            f"[blue]Found {len(listing.profiles)} provisioning profiles in[/] {directory}"
            + (f" ([yellow]{expired} expired[/])" if expired else "")
        )
        return listing
