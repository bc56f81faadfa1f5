from datetime import timedelta

import pytest

from dinghy.src.core.errors import (
    DeviceNotFound,
    NoAuthorizedDevice,
    NoMatchingProfile,
    ProfileDecodeError,
    TrustStoreUnavailable,
)
from dinghy.src.core.models import AppPackage, PlatformFamily, SessionOutcome, SessionResult
from dinghy.src.core import run_orchestrator
from dinghy.src.core.run_orchestrator import RunOrchestrator, RunRequest, describe_failure, exit_code_for
from dinghy.src.device.discovery import DeviceDiscovery
from dinghy.src.signing.identity_store import IdentityListing, IdentityStoreReader
from dinghy.src.signing.provisioning_profile_reader import ProfileListing
from dinghy.src.utils.config_loader import Settings

from .conftest import NOW, FakeTransport, make_device, make_identity, make_profile


class FakeIdentityStore(IdentityStoreReader):
    def __init__(self, identities=(), error=None, unreadable=()):
        self.identities = list(identities)
        self.error = error
        self.unreadable = list(unreadable)
        self.calls = 0

    def list_identities(self):
        self.calls += 1
        if self.error:
            raise self.error
        return IdentityListing(identities=list(self.identities), errors=list(self.unreadable))


class FakeProfileReader:
    def __init__(self, profiles=(), unreadable=()):
        self.profiles = list(profiles)
        self.unreadable = list(unreadable)
        self.calls = 0

    def list_profiles(self, directory=None, now=None):
        self.calls += 1
        return ProfileListing(profiles=list(self.profiles), errors=list(self.unreadable))


class FakeDiscovery(DeviceDiscovery):
    def __init__(self, devices):
        self.devices = devices

    def list_devices(self, family=None):
        return [d for d in self.devices if family is None or d.family is family]


class FakeAssembler:
    def __init__(self, tmp_path):
        self.tmp_path = tmp_path
        self.plans = []

    def assemble(self, executable, plan):
        self.plans.append(plan)
        workdir = self.tmp_path / f"work-{plan.device.identifier}"
        workdir.mkdir()
        return AppPackage(
            path=workdir / "app.app",
            application_identifier=plan.application_identifier,
            executable_name="app",
            signed=True,
            workdir=workdir,
        )


@pytest.fixture
def executable(tmp_path):
    path = tmp_path / "unit-tests"
    path.write_bytes(b"\x7fELF")
    return path


def orchestrator(devices, transports, identities=(), profiles=(), store_error=None, settings=None, unreadable_profiles=()):
    def transport_factory(device, settings):
        return transports[device.identifier]

    return RunOrchestrator(
        settings or Settings(),
        identity_store=FakeIdentityStore(identities, store_error),
        profile_reader=FakeProfileReader(profiles, unreadable_profiles),
        discovery=FakeDiscovery(devices),
        transport_factory=transport_factory,
    )


def test_android_run_on_first_device(executable):
    devices = [make_device(f"serial-{i}", family=PlatformFamily.ANDROID) for i in range(2)]
    transports = {d.identifier: FakeTransport(d, chunks=["ok\n"]) for d in devices}
    runner = orchestrator(devices, transports)

    results = runner.run(
        RunRequest(executable=executable, target="aarch64-linux-android", application_identifier="app.id")
    )

    assert [r.device.identifier for r in results] == ["serial-0"]
    assert results[0].text == "ok\n"
    assert transports["serial-1"].calls == []
    assert runner.identity_store.calls == 0


def test_all_devices_in_parallel(executable):
    devices = [make_device(f"serial-{i}", family=PlatformFamily.ANDROID) for i in range(3)]
    transports = {d.identifier: FakeTransport(d, chunks=[f"{d.identifier}\n"]) for d in devices}

    results = orchestrator(devices, transports).run(
        RunRequest(
            executable=executable,
            target="aarch64-linux-android",
            application_identifier="app.id",
            all_devices=True,
        )
    )

    assert [r.text for r in results] == ["serial-0\n", "serial-1\n", "serial-2\n"]
    assert exit_code_for(results) == 0


def test_ios_run_resolves_per_device(monkeypatch, tmp_path, executable):
    allowed = make_device("allowed")
    denied = make_device("denied")
    transports = {d.identifier: FakeTransport(d, chunks=["hi\n"]) for d in (allowed, denied)}
    runner = orchestrator(
        [allowed, denied],
        transports,
        identities=[make_identity()],
        profiles=[make_profile(devices=["allowed"], expires=NOW + timedelta(days=3650))],
    )
    assembler = FakeAssembler(tmp_path)
    monkeypatch.setattr(runner, "_assembler", lambda keep_package: assembler)

    results = runner.run(
        RunRequest(
            executable=executable,
            target="aarch64-apple-ios",
            application_identifier="team.example.Dinghy",
            all_devices=True,
        )
    )

    assert [r.outcome for r in results] == [SessionOutcome.COMPLETED, SessionOutcome.FAILED]
    assert isinstance(results[1].diagnostics, NoAuthorizedDevice)
    assert describe_failure(results[1]).startswith("authorized-device")
    assert transports["denied"].calls == []
    assert [p.device.identifier for p in assembler.plans] == ["allowed"]
    assert runner.identity_store.calls == 1
    assert runner.profile_reader.calls == 1
    # Temporary packages are removed after the run
    assert not (tmp_path / "work-allowed").exists()
    assert exit_code_for(results) == 1


def test_trust_store_unavailable_fails_every_device(executable):
    devices = [make_device("a"), make_device("b")]
    transports = {d.identifier: FakeTransport(d) for d in devices}
    runner = orchestrator(devices, transports, store_error=TrustStoreUnavailable("locked"))

    results = runner.run(
        RunRequest(executable=executable, target="aarch64-apple-ios", application_identifier="x", all_devices=True)
    )

    assert [r.outcome for r in results] == [SessionOutcome.FAILED, SessionOutcome.FAILED]
    assert all(isinstance(r.diagnostics, TrustStoreUnavailable) for r in results)


def test_requested_device_not_found(executable):
    devices = [make_device("serial-0", family=PlatformFamily.ANDROID)]
    with pytest.raises(DeviceNotFound):
        orchestrator(devices, {}).run(
            RunRequest(
                executable=executable,
                target="aarch64-linux-android",
                application_identifier="app.id",
                device="missing",
            )
        )


def test_requested_device_by_name(executable):
    devices = [make_device(f"serial-{i}", family=PlatformFamily.ANDROID) for i in range(2)]
    transports = {d.identifier: FakeTransport(d) for d in devices}
    results = orchestrator(devices, transports).run(
        RunRequest(
            executable=executable,
            target="aarch64-linux-android",
            application_identifier="app.id",
            device="Phone serial-1",
        )
    )
    assert [r.device.identifier for r in results] == ["serial-1"]


def test_incompatible_devices_are_ignored(executable):
    devices = [make_device("old", family=PlatformFamily.ANDROID, arch="armv7")]
    with pytest.raises(DeviceNotFound):
        orchestrator(devices, {}).run(
            RunRequest(executable=executable, target="aarch64-linux-android", application_identifier="app.id")
        )


@pytest.mark.parametrize(
    "outcomes, expected",
    [
        ([(SessionOutcome.COMPLETED, 0)], 0),
        ([(SessionOutcome.COMPLETED, 0), (SessionOutcome.COMPLETED, 3)], 3),
        ([(SessionOutcome.TIMED_OUT, None)], 1),
        ([], 1),
    ],
)
def test_exit_code_for(outcomes, expected):
    results = [SessionResult(make_device(), outcome, exit_code=code) for outcome, code in outcomes]
    assert exit_code_for(results) == expected


def test_zero_timeout_overrides_config_default(monkeypatch, executable):
    device = make_device("serial-0", family=PlatformFamily.ANDROID)
    transports = {device.identifier: FakeTransport(device, chunks=["ok\n"])}
    runner = orchestrator([device], transports, settings=Settings(default_timeout=30))
    seen = []
    real_run_sessions = run_orchestrator.run_sessions

    def recording_run_sessions(sessions):
        seen.extend(sessions)
        return real_run_sessions(sessions)

    monkeypatch.setattr(run_orchestrator, "run_sessions", recording_run_sessions)

    results = runner.run(
        RunRequest(executable=executable, target="aarch64-linux-android", application_identifier="app.id", timeout=0)
    )

    assert [s.timeout for s in seen] == [None]
    assert results[0].outcome is SessionOutcome.COMPLETED


def test_config_default_timeout_applies_without_request_timeout(monkeypatch, executable):
    device = make_device("serial-0", family=PlatformFamily.ANDROID)
    transports = {device.identifier: FakeTransport(device)}
    runner = orchestrator([device], transports, settings=Settings(default_timeout=30))
    seen = []
    monkeypatch.setattr(run_orchestrator, "run_sessions", lambda sessions: seen.extend(sessions) or [])

    runner.run(RunRequest(executable=executable, target="aarch64-linux-android", application_identifier="app.id"))

    assert [s.timeout for s in seen] == [30]


def test_built_packages_removed_when_preparation_is_interrupted(monkeypatch, tmp_path, executable):
    first = make_device("first")
    second = make_device("second")
    transports = {d.identifier: FakeTransport(d) for d in (first, second)}
    runner = orchestrator(
        [first, second],
        transports,
        identities=[make_identity()],
        profiles=[make_profile(devices=["first", "second"], expires=NOW + timedelta(days=3650))],
    )
    assembler = FakeAssembler(tmp_path)
    real_assemble = assembler.assemble

    def assemble_then_interrupt(executable, plan):
        if plan.device.identifier == "second":
            raise KeyboardInterrupt
        return real_assemble(executable, plan)

    assembler.assemble = assemble_then_interrupt
    monkeypatch.setattr(runner, "_assembler", lambda keep_package: assembler)

    with pytest.raises(KeyboardInterrupt):
        runner.run(
            RunRequest(
                executable=executable,
                target="aarch64-apple-ios",
                application_identifier="team.example.Dinghy",
                all_devices=True,
            )
        )

    assert not (tmp_path / "work-first").exists()
    assert transports["first"].calls == []


def test_unreadable_entries_are_reported(executable, tmp_path):
    device = make_device("phone")
    runner = orchestrator(
        [device],
        {device.identifier: FakeTransport(device)},
        identities=[make_identity()],
        profiles=[make_profile(pattern="other.team.*", devices=["phone"], expires=NOW + timedelta(days=3650))],
        unreadable_profiles=[ProfileDecodeError(tmp_path / "broken.mobileprovision", "not a CMS envelope")],
    )

    results = runner.run(
        RunRequest(executable=executable, target="aarch64-apple-ios", application_identifier="team.example.Dinghy")
    )

    assert results[0].outcome is SessionOutcome.FAILED
    assert isinstance(results[0].diagnostics, NoMatchingProfile)
    assert len(results[0].diagnostics.unreadable) == 1
    assert "1 unreadable identity or profile entries skipped" in describe_failure(results[0])
