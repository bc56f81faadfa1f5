from pathlib import Path
from typing import Dict, Optional
import os
import plistlib
import re
import shutil
import subprocess
import tempfile

from dinghy.logger import get_console
from dinghy.src.bundle.entitlements_processor import EntitlementsProcessor
from dinghy.src.bundle.executable_inspector import minimum_os_version
from dinghy.src.core.errors import AssemblyError, SigningFailed
from dinghy.src.core.models import AppPackage, SigningPlan
from dinghy.src.utils.plist import OrderPreservingDict

EMBEDDED_PROFILE = "embedded.mobileprovision"
ENTITLEMENTS_FILE = "Entitlements.plist"


def bundle_name_for(executable: Path) -> str:
    """Bundle names only allow a restricted character set"""
    name = re.sub(r"[^A-Za-z0-9_.-]", "-", executable.stem) or "dinghy"
    return name


def build_manifest(plan: SigningPlan, executable_name: str, min_os: str) -> OrderPreservingDict:
    """Info.plist contents for a bundle that only wraps one executable"""
    manifest = OrderPreservingDict()
    manifest["CFBundleIdentifier"] = plan.application_identifier
    manifest["CFBundleExecutable"] = executable_name
    manifest["CFBundleName"] = executable_name
    manifest["CFBundleDisplayName"] = executable_name
    manifest["CFBundlePackageType"] = "APPL"
    manifest["CFBundleVersion"] = "1.0"
    manifest["CFBundleShortVersionString"] = "1.0"
    manifest["CFBundleSupportedPlatforms"] = ["iPhoneOS"]
    manifest["MinimumOSVersion"] = min_os
    manifest["UIRequiredDeviceCapabilities"] = [
        "arm64" if plan.device.arch in (None, "aarch64") else "armv7"
    ]
    return manifest


class PackageAssembler:
    """Builds and signs a minimal .app around a pre-built executable"""

    def __init__(
        self,
        codesign_path: str = "codesign",
        default_minimum_os: str = "9.0",
        cache_dir: Optional[Path] = None,
    ):
        self.console = get_console()
        self.codesign_path = codesign_path
        self.default_minimum_os = default_minimum_os
        self.cache_dir = Path(cache_dir) if cache_dir else None

    def _workdir(self, plan: SigningPlan) -> Path:
        if self.cache_dir is None:
            return Path(tempfile.mkdtemp(prefix="dinghy-"))
        # One cached bundle per application identifier and device
        workdir = self.cache_dir / f"{plan.application_identifier}-{plan.device.identifier}"
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True)
        return workdir

    def assemble(self, executable_path: Path, plan: SigningPlan) -> AppPackage:
        """Create the signed bundle, or raise AssemblyError / SigningFailed"""
        executable_path = Path(executable_path)
        if not executable_path.is_file():
            raise AssemblyError(f"Executable not found: {executable_path}")

        workdir = self._workdir(plan)
        try:
            package = self._build(executable_path, plan, workdir)
            self.sign(package.path, plan.identity.fingerprint, workdir / ENTITLEMENTS_FILE)
        except OSError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            raise AssemblyError(f"Cannot build package for {executable_path.name}: {e}") from e
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        package.signed = True
        self.console.log(f"[green]Signed package:[/] {package.path}")
        return package

    def _build(self, executable_path: Path, plan: SigningPlan, workdir: Path) -> AppPackage:
        name = bundle_name_for(executable_path)
        app_dir = workdir / f"{name}.app"
        app_dir.mkdir()
        self.console.log(f"[blue]Assembling bundle:[/] {app_dir}")

        target = app_dir / name
        shutil.copyfile(executable_path, target)
        os.chmod(target, 0o755)

        min_os = minimum_os_version(executable_path) or self.default_minimum_os
        with open(app_dir / "Info.plist", "wb") as f:
            plistlib.dump(build_manifest(plan, name, min_os), f, sort_keys=False)

        (app_dir / EMBEDDED_PROFILE).write_bytes(plan.profile.payload)

        entitlements = EntitlementsProcessor(
            plan.identity.team_identifier, plan.application_identifier
        ).process_entitlements(plan.profile.entitlements)
        self.write_entitlements(entitlements, workdir / ENTITLEMENTS_FILE)

        return AppPackage(
            path=app_dir,
            application_identifier=plan.application_identifier,
            executable_name=name,
            cached=self.cache_dir is not None,
            workdir=workdir,
        )

    @staticmethod
    def write_entitlements(entitlements: Dict, path: Path) -> None:
        with open(path, "wb") as f:
            plistlib.dump(entitlements, f, sort_keys=False)

    def sign(self, app_dir: Path, fingerprint: str, entitlements: Path) -> None:
        """Run codesign with the identity selected by fingerprint"""
        cmd = [
            self.codesign_path,
            "-f",
            "-s",
            fingerprint,
            "--entitlements",
            str(entitlements),
            str(app_dir),
        ]
        self.console.log(f"[cyan]Running codesign command:[/] {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise SigningFailed(str(e))
        if result.returncode != 0:
            self.console.log(f"[red]Codesign failed:[/]\n{result.stderr}")
            raise SigningFailed(result.stderr, result.returncode)
