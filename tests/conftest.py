from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence
import plistlib
import threading

import pytest
from asn1crypto import cms, keys, x509

from dinghy.src.core.errors import DeviceDisconnected, InstallFailed, LaunchFailed
from dinghy.src.core.models import (
    AppPackage,
    Certificate,
    Device,
    ExitStatus,
    IdentityKind,
    OutputChunk,
    PlatformFamily,
    ProvisioningProfile,
    SigningIdentity,
    StreamKind,
)
from dinghy.src.device.transport import DeviceTransport, InstallHandle, ProcessHandle

NOW = datetime(2026, 1, 1, 12, 0, 0)
TEAM = "TEAM123456"


def make_identity(
    fingerprint: str = "A" * 40,
    team: str = TEAM,
    kind: IdentityKind = IdentityKind.DEVELOPMENT,
    name: Optional[str] = None,
) -> SigningIdentity:
    if name is None:
        name = "Apple Development: Jane Doe (XYZ)" if kind is IdentityKind.DEVELOPMENT else "Apple Distribution: Example"
    return SigningIdentity(
        certificate=Certificate(fingerprint=fingerprint, common_name=name, organizational_unit=team),
        kind=kind,
    )


def make_profile(
    pattern: str = "team.example.*",
    team: str = TEAM,
    devices: Optional[Sequence[str]] = ("device-1",),
    expires: datetime = NOW + timedelta(days=30),
    uuid: str = "profile-uuid",
    entitlements: Optional[Dict] = None,
    name: Optional[str] = None,
) -> ProvisioningProfile:
    if entitlements is None:
        entitlements = {"application-identifier": f"{team}.{pattern}", "get-task-allow": True}
    return ProvisioningProfile(
        path=Path(f"/profiles/{uuid}.mobileprovision"),
        name=name or uuid,
        uuid=uuid,
        application_identifier_pattern=pattern,
        team_identifier=team,
        authorized_devices=None if devices is None else frozenset(devices),
        entitlements=entitlements,
        expiration_date=expires,
        payload=b"payload-" + uuid.encode(),
        expired=expires <= NOW,
    )


def make_device(identifier: str = "device-1", family: PlatformFamily = PlatformFamily.IOS, arch: str = "aarch64") -> Device:
    return Device(identifier=identifier, name=f"Phone {identifier}", family=family, connection=identifier, arch=arch)


def build_profile_payload(declaration: Dict) -> bytes:
    """Wrap a plist declaration in an unsigned CMS signed-data envelope"""
    content = plistlib.dumps(declaration, sort_keys=False)
    signed_data = cms.SignedData(
        {
            "version": "v1",
            "digest_algorithms": [],
            "encap_content_info": {"content_type": "data", "content": content},
            "signer_infos": [],
        }
    )
    return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()


def build_certificate_der(
    common_name: Optional[str] = "Apple Development: Jane Doe (XYZ)",
    org_unit: Optional[str] = TEAM,
) -> bytes:
    """A structurally valid, unsigned certificate with the given subject"""
    subject = {}
    if common_name is not None:
        subject["common_name"] = common_name
    if org_unit is not None:
        subject["organizational_unit_name"] = org_unit
    subject["organization_name"] = "Example Corp"

    not_before = datetime(2025, 1, 1, tzinfo=timezone.utc)
    not_after = datetime(2027, 1, 1, tzinfo=timezone.utc)
    tbs = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": 1,
            "signature": {"algorithm": "sha256_rsa"},
            "issuer": x509.Name.build({"common_name": "Test WWDR"}),
            "validity": {
                "not_before": x509.Time({"utc_time": not_before}),
                "not_after": x509.Time({"utc_time": not_after}),
            },
            "subject": x509.Name.build(subject),
            "subject_public_key_info": {
                "algorithm": {"algorithm": "rsa"},
                "public_key": keys.RSAPublicKey({"modulus": 3233, "public_exponent": 17}),
            },
        }
    )
    cert = x509.Certificate(
        {
            "tbs_certificate": tbs,
            "signature_algorithm": {"algorithm": "sha256_rsa"},
            "signature_value": b"\x00",
        }
    )
    return cert.dump()


class FakeProcess(ProcessHandle):
    pass


class FakeTransport(DeviceTransport):
    """Scripted transport: emits chunks, then exits, hangs or disconnects.

    ``exit_code=None`` means the process never exits until terminated.
    ``disconnect_after`` raises DeviceDisconnected after that many chunks.
    ``early_exit`` reports the exit status before the output has been drained.
    """

    def __init__(
        self,
        device: Device,
        chunks: Sequence[str] = (),
        exit_code: Optional[int] = 0,
        disconnect_after: Optional[int] = None,
        install_error: Optional[Exception] = None,
        launch_error: Optional[Exception] = None,
        chunk_delay: float = 0.0,
        loses_arguments: bool = False,
        early_exit: bool = False,
    ):
        super().__init__(device)
        self.chunks = list(chunks)
        self.exit_code = exit_code
        self.disconnect_after = disconnect_after
        self.install_error = install_error
        self.launch_error = launch_error
        self.chunk_delay = chunk_delay
        self._loses_arguments = loses_arguments
        self.early_exit = early_exit

        self.calls: List[str] = []
        self.launched_with = None
        self.terminate_calls = 0
        self._stopped = threading.Event()
        self._streamed = threading.Event()

    @property
    def loses_arguments(self) -> bool:
        return self._loses_arguments

    def install(self, package: AppPackage) -> InstallHandle:
        self.calls.append("install")
        if self.install_error:
            raise self.install_error
        return InstallHandle(device=self.device, package=package)

    def launch(self, handle: InstallHandle, args, env) -> ProcessHandle:
        self.calls.append("launch")
        if self.launch_error:
            raise self.launch_error
        self.launched_with = (list(args), dict(env))
        return FakeProcess(handle)

    def stream_output(self, process: ProcessHandle) -> Iterator[OutputChunk]:
        try:
            for index, data in enumerate(self.chunks):
                if self.disconnect_after is not None and index >= self.disconnect_after:
                    break
                if self.chunk_delay:
                    self._stopped.wait(self.chunk_delay)
                yield OutputChunk(StreamKind.STDOUT, data)
            if self.disconnect_after is not None:
                self._stopped.set()
                raise DeviceDisconnected(self.device.identifier, "cable pulled")
        finally:
            self._streamed.set()

    def wait_exit(self, process: ProcessHandle) -> ExitStatus:
        if self.exit_code is None or self.disconnect_after is not None:
            self._stopped.wait()
            raise DeviceDisconnected(self.device.identifier, "process gone")
        if not self.early_exit:
            # Exit is only reported once all output has been produced
            self._streamed.wait()
        return ExitStatus(self.exit_code)

    def terminate(self, process: ProcessHandle) -> None:
        self.calls.append("terminate")
        self.terminate_calls += 1
        self._stopped.set()

    def uninstall(self, handle: InstallHandle) -> None:
        self.calls.append("uninstall")


@pytest.fixture
def device():
    return make_device()


@pytest.fixture
def package(tmp_path):
    exe = tmp_path / "tests-bin"
    exe.write_bytes(b"\x7fELF")
    return AppPackage.bare(exe, "team.example.Dinghy")


@pytest.fixture
def identity():
    return make_identity()


@pytest.fixture
def install_failed():
    return InstallFailed("insufficient storage")


@pytest.fixture
def launch_failed():
    return LaunchFailed("debugserver refused")
