from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from dinghy.logger import get_console
from dinghy.src.bundle.package_assembler import PackageAssembler
from dinghy.src.core.errors import AssemblyError, DinghyError, ResolutionError, TrustStoreUnavailable
from dinghy.src.core.models import AppPackage, Device, SessionOutcome, SessionResult
from dinghy.src.core.resolver import resolve
from dinghy.src.core.targets import Target, parse_target
from dinghy.src.device.discovery import DeviceDiscovery, transport_for
from dinghy.src.device.session import DeviceSession, run_sessions
from dinghy.src.device.transport import DeviceTransport
from dinghy.src.signing.identity_store import IdentityStoreReader, KeychainIdentityStore
from dinghy.src.signing.provisioning_profile_reader import ProvisioningProfileReader
from dinghy.src.utils.config_loader import Settings, parse_timeout


@dataclass
class RunRequest:
    """What the build side hands over for one run"""

    executable: Path
    target: str
    application_identifier: str
    device: Optional[str] = None  # None = first compatible device
    all_devices: bool = False
    args: Sequence[str] = ()
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None  # None = config default, 0 = no limit
    keep_package: bool = False


class RunOrchestrator:
    """Discovers devices, prepares a package per device and runs the sessions"""

    def __init__(
        self,
        settings: Settings,
        identity_store: Optional[IdentityStoreReader] = None,
        profile_reader: Optional[ProvisioningProfileReader] = None,
        discovery: Optional[DeviceDiscovery] = None,
        transport_factory: Optional[Callable[[Device, Settings], DeviceTransport]] = None,
    ):
        self.console = get_console()
        self.settings = settings
        self.identity_store = identity_store or KeychainIdentityStore(settings.security_path)
        self.profile_reader = profile_reader or ProvisioningProfileReader(settings.profiles_dir)
        self.discovery = discovery or DeviceDiscovery(settings)
        self.transport_factory = transport_factory or transport_for

    def select_devices(self, target: Target, request: RunRequest) -> List[Device]:
        devices = self.discovery.find_devices(target, request.device)
        if request.all_devices or request.device:
            return devices
        return devices[:1]

    def _assembler(self, keep_package: bool) -> PackageAssembler:
        cache_dir = self.settings.package_cache_dir if keep_package else None
        if keep_package and cache_dir is None:
            cache_dir = Path.home() / ".dinghy" / "packages"
        return PackageAssembler(
            codesign_path=self.settings.codesign_path,
            default_minimum_os=self.settings.minimum_os_version,
            cache_dir=cache_dir,
        )

    def prepare_packages(
        self, target: Target, devices: Sequence[Device], request: RunRequest
    ) -> Tuple[Dict[str, AppPackage], List[SessionResult]]:
        """Build one package per device; devices that cannot be prepared get a failed result"""
        packages: Dict[str, AppPackage] = {}
        failures: List[SessionResult] = []

        if not target.needs_signing:
            for device in devices:
                packages[device.identifier] = AppPackage.bare(request.executable, request.application_identifier)
            return packages, failures

        # Identities and profiles are read once per invocation, never cached beyond it
        try:
            identity_listing = self.identity_store.list_identities()
        except TrustStoreUnavailable as e:
            self.console.log(f"[red]{e}[/]")
            return packages, [SessionResult(d, SessionOutcome.FAILED, diagnostics=e) for d in devices]
        profile_listing = self.profile_reader.list_profiles()
        unreadable = list(identity_listing.errors) + list(profile_listing.errors)

        assembler = self._assembler(request.keep_package or self.settings.package_cache_dir is not None)
        try:
            for device in devices:
                try:
                    plan = resolve(
                        identity_listing.identities, profile_listing.profiles, device, request.application_identifier
                    )
                    packages[device.identifier] = assembler.assemble(request.executable, plan)
                except ResolutionError as e:
                    e.unreadable = unreadable
                    self.console.log(f"[red]Cannot prepare {request.executable.name} for {device}:[/] {e}")
                    failures.append(SessionResult(device, SessionOutcome.FAILED, diagnostics=e))
                except AssemblyError as e:
                    self.console.log(f"[red]Cannot prepare {request.executable.name} for {device}:[/] {e}")
                    failures.append(SessionResult(device, SessionOutcome.FAILED, diagnostics=e))
        except BaseException:
            for package in packages.values():
                package.cleanup()
            raise
        return packages, failures

    def run(self, request: RunRequest) -> List[SessionResult]:
        target = parse_target(request.target)
        devices = self.select_devices(target, request)
        self.console.log(
            f"[blue]Running {request.executable.name} on:[/] {', '.join(str(d) for d in devices)}"
        )

        if request.timeout is None:
            timeout = self.settings.default_timeout
        else:
            timeout = parse_timeout(request.timeout, "timeout")

        packages, results = self.prepare_packages(target, devices, request)
        try:
            sessions = [
                DeviceSession(
                    self.transport_factory(device, self.settings),
                    packages[device.identifier],
                    args=request.args,
                    env=request.env,
                    timeout=timeout,
                    args_via_env=self.settings.args_via_env,
                    poll_interval=self.settings.poll_interval,
                    drain_grace=self.settings.drain_grace,
                )
                for device in devices
                if device.identifier in packages
            ]
            results.extend(run_sessions(sessions))
        finally:
            for package in packages.values():
                package.cleanup()

        order = {d.identifier: i for i, d in enumerate(devices)}
        results.sort(key=lambda r: order[r.device.identifier])
        return results


def exit_code_for(results: Sequence[SessionResult]) -> int:
    """Process exit code summarising a run: first failure wins"""
    if not results:
        return 1
    for result in results:
        if result.outcome is not SessionOutcome.COMPLETED:
            return 1
        if result.exit_code:
            return result.exit_code
    return 0


def describe_failure(result: SessionResult) -> Optional[str]:
    if result.diagnostics is None:
        return None
    error: DinghyError = result.diagnostics
    if isinstance(error, ResolutionError):
        message = f"{error.stage.value}: {error.detail}"
        if error.unreadable:
            message += f" ({len(error.unreadable)} unreadable identity or profile entries skipped)"
        return message
    return str(error)
