from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple
import shutil

from dinghy.src.core.errors import DinghyError

WILDCARD = "*"


def utcnow() -> datetime:
    """Naive UTC timestamp, the same form plistlib hands back for <date>"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IdentityKind(Enum):
    DEVELOPMENT = "development"
    DISTRIBUTION = "distribution"


class PlatformFamily(Enum):
    IOS = "ios"
    ANDROID = "android"


class StreamKind(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class SessionState(Enum):
    IDLE = "idle"
    INSTALLED = "installed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    DISCONNECTED = "disconnected"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.TIMED_OUT,
        SessionState.DISCONNECTED,
    }
)

# Reported outcome is the terminal state the session ended in
SessionOutcome = SessionState


@dataclass(frozen=True)
class Certificate:
    """Metadata of a code signing certificate"""

    fingerprint: str  # SHA-1 of the DER encoding, upper-case hex
    common_name: str
    organizational_unit: str  # Team identifier
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None


@dataclass(frozen=True)
class SigningIdentity:
    """A certificate whose private key is available to codesign"""

    certificate: Certificate
    kind: IdentityKind

    @property
    def fingerprint(self) -> str:
        return self.certificate.fingerprint

    @property
    def team_identifier(self) -> str:
        return self.certificate.organizational_unit

    @property
    def name(self) -> str:
        return self.certificate.common_name


@dataclass(frozen=True)
class ProvisioningProfile:
    """Decoded provisioning profile"""

    path: Path
    name: str
    uuid: str
    application_identifier_pattern: str  # Team prefix stripped, may end in "*"
    team_identifier: str
    authorized_devices: Optional[FrozenSet[str]]  # None = not device-restricted
    entitlements: Dict = field(hash=False, compare=False)
    expiration_date: datetime
    payload: bytes = field(repr=False, hash=False, compare=False)
    certificate_fingerprints: Tuple[str, ...] = ()
    expired: bool = False

    @property
    def is_wildcard(self) -> bool:
        return self.application_identifier_pattern.endswith(WILDCARD)

    def matches(self, application_identifier: str) -> bool:
        """Check the application identifier against this profile's pattern"""
        pattern = self.application_identifier_pattern
        if pattern.endswith(WILDCARD):
            return application_identifier.startswith(pattern[: -len(WILDCARD)])
        return application_identifier == pattern

    def is_exact_match(self, application_identifier: str) -> bool:
        return not self.is_wildcard and self.application_identifier_pattern == application_identifier

    def authorizes(self, device_id: str) -> bool:
        if self.authorized_devices is None:
            return True
        return device_id in self.authorized_devices

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiration_date <= (now or utcnow())


@dataclass(frozen=True)
class Device:
    """An attached device"""

    identifier: str
    name: str
    family: PlatformFamily
    connection: str  # UDID for iOS, adb serial for Android
    arch: Optional[str] = None
    os_version: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.name} ({self.identifier})"


@dataclass(frozen=True)
class SigningPlan:
    identity: SigningIdentity
    profile: ProvisioningProfile
    device: Device
    application_identifier: str


@dataclass
class AppPackage:
    """Installable package on disk.

    ``workdir`` is the temporary directory the package was built in; it is
    removed by ``cleanup()`` unless the package lives in the package cache.
    """

    path: Path
    application_identifier: str
    executable_name: str
    signed: bool = False
    cached: bool = False
    workdir: Optional[Path] = None

    @classmethod
    def bare(cls, executable: Path, application_identifier: str) -> "AppPackage":
        """Wrap a plain executable, used by families that install binaries directly"""
        executable = Path(executable)
        return cls(
            path=executable,
            application_identifier=application_identifier,
            executable_name=executable.name,
        )

    def cleanup(self) -> None:
        if self.cached or self.workdir is None:
            return
        shutil.rmtree(self.workdir, ignore_errors=True)
        self.workdir = None

    def __enter__(self) -> "AppPackage":
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()


@dataclass(frozen=True)
class OutputChunk:
    stream: StreamKind
    data: str


@dataclass(frozen=True)
class ExitStatus:
    code: int


@dataclass
class SessionResult:
    device: Device
    outcome: SessionOutcome
    exit_code: Optional[int] = None
    output: List[OutputChunk] = field(default_factory=list)
    diagnostics: Optional[DinghyError] = None

    @property
    def text(self) -> str:
        return "".join(chunk.data for chunk in self.output)

    @property
    def stdout(self) -> str:
        return "".join(c.data for c in self.output if c.stream is StreamKind.STDOUT)

    @property
    def stderr(self) -> str:
        return "".join(c.data for c in self.output if c.stream is StreamKind.STDERR)

    @property
    def succeeded(self) -> bool:
        return self.outcome is SessionOutcome.COMPLETED and self.exit_code == 0
