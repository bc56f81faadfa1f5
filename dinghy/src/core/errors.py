from enum import Enum
from pathlib import Path
from typing import List, Optional


class DinghyError(Exception):
    """Base class for every error raised by dinghy"""


class ConfigError(DinghyError):
    """Configuration file or environment value is invalid"""


class UnsupportedTarget(DinghyError):
    """Target triple does not belong to a supported device family"""

    def __init__(self, triple: str):
        self.triple = triple
        super().__init__(f"Unsupported target triple: {triple}")


class TrustStoreUnavailable(DinghyError):
    """The local trust store could not be queried at all"""


class MalformedCertificate(DinghyError):
    """A single trust store entry could not be interpreted"""

    def __init__(self, entry: str, reason: str):
        self.entry = entry
        self.reason = reason
        super().__init__(f"Malformed certificate {entry}: {reason}")


class ProfileDecodeError(DinghyError):
    """A single provisioning profile file could not be decoded"""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Could not decode provisioning profile {path}: {reason}")


class ResolutionStage(Enum):
    MATCHING_PROFILE = "matching-profile"
    AUTHORIZED_DEVICE = "authorized-device"
    UNEXPIRED_PROFILE = "unexpired-profile"
    IDENTITY = "identity"


class ResolutionError(DinghyError):
    """No signing plan could be produced.

    ``stage`` names the first filter that came out empty and ``candidates``
    is the number of profiles that were still alive when that filter ran.
    """

    stage: ResolutionStage

    def __init__(self, application_identifier: str, device_id: str, detail: str, candidates: int = 0):
        self.application_identifier = application_identifier
        self.device_id = device_id
        self.detail = detail
        self.candidates = candidates
        # Identity or profile entries that could not be read and so were never considered
        self.unreadable: List[DinghyError] = []
        super().__init__(detail)


class NoMatchingProfile(ResolutionError):
    stage = ResolutionStage.MATCHING_PROFILE


class NoAuthorizedDevice(ResolutionError):
    stage = ResolutionStage.AUTHORIZED_DEVICE


class AllCandidatesExpired(ResolutionError):
    stage = ResolutionStage.UNEXPIRED_PROFILE


class NoIdentity(ResolutionError):
    stage = ResolutionStage.IDENTITY


class AssemblyError(DinghyError):
    """The application package could not be built"""


class SigningFailed(AssemblyError):
    """codesign rejected the package; retrying with the same plan is pointless"""

    def __init__(self, stderr: str, returncode: Optional[int] = None):
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"Signing failed (exit {returncode}): {stderr.strip()}")


class TransportError(DinghyError):
    """Base class for device transport failures"""


class InstallFailed(TransportError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Install failed: {reason}")


class LaunchFailed(TransportError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Launch failed: {reason}")


class DeviceDisconnected(TransportError):
    def __init__(self, device_id: str, detail: str = ""):
        self.device_id = device_id
        self.detail = detail
        message = f"Device {device_id} disconnected"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class SessionTimedOut(DinghyError):
    def __init__(self, device_id: str, timeout: float):
        self.device_id = device_id
        self.timeout = timeout
        super().__init__(f"No exit status from {device_id} within {timeout:g}s")


class SessionCancelled(DinghyError):
    """The session was interrupted before the process exited"""


class DeviceBusy(DinghyError):
    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device {device_id} is already in use by another session")


class DeviceNotFound(DinghyError):
    def __init__(self, requested: Optional[str], target: Optional[str] = None):
        self.requested = requested
        self.target = target
        if requested:
            message = f"Device not found: {requested}"
        else:
            message = "No attached device"
        if target:
            message += f" (compatible with {target})"
        super().__init__(message)
