from typing import List, Optional
import re
import shutil
import subprocess

from dinghy.logger import get_console
from dinghy.src.core.errors import DeviceNotFound
from dinghy.src.core.models import Device, PlatformFamily
from dinghy.src.core.targets import Target, normalize_arch
from dinghy.src.device.android_transport import AndroidTransport
from dinghy.src.device.ios_transport import IosTransport
from dinghy.src.device.transport import DeviceTransport, run_tool
from dinghy.src.utils.config_loader import Settings

ADB_DEVICE_RE = re.compile(r"^(\S+)\s+device(\s|$)")


def parse_adb_devices(output: str) -> List[str]:
    """Serials of the devices `adb devices` reports as ready"""
    serials = []
    for line in output.splitlines():
        if line.startswith("List of devices") or line.startswith("*"):
            continue
        if m := ADB_DEVICE_RE.match(line.strip()):
            serials.append(m.group(1))
    return serials


class IosDeviceLister:
    """iOS devices attached over USB, through libimobiledevice"""

    def __init__(self, idevice_id_path: str = "idevice_id", ideviceinfo_path: str = "ideviceinfo"):
        self.console = get_console()
        self.idevice_id_path = idevice_id_path
        self.ideviceinfo_path = ideviceinfo_path

    def is_supported(self) -> bool:
        return shutil.which(self.idevice_id_path) is not None

    def _info(self, udid: str, key: str) -> Optional[str]:
        try:
            result = run_tool([self.ideviceinfo_path, "-u", udid, "-k", key], timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def list_devices(self) -> List[Device]:
        if not self.is_supported():
            return []
        try:
            result = run_tool([self.idevice_id_path, "-l"], timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.console.log(f"[yellow]Cannot list iOS devices:[/] {e}")
            return []

        devices = []
        for udid in dict.fromkeys(result.stdout.split()):
            devices.append(
                Device(
                    identifier=udid,
                    name=self._info(udid, "DeviceName") or udid,
                    family=PlatformFamily.IOS,
                    connection=udid,
                    arch=normalize_arch(self._info(udid, "CPUArchitecture")),
                    os_version=self._info(udid, "ProductVersion"),
                )
            )
        return devices


class AndroidDeviceLister:
    """Android devices visible to adb"""

    def __init__(self, adb_path: str = "adb"):
        self.console = get_console()
        self.adb_path = adb_path

    def is_supported(self) -> bool:
        return shutil.which(self.adb_path) is not None

    def _getprop(self, serial: str, prop: str) -> Optional[str]:
        try:
            result = run_tool([self.adb_path, "-s", serial, "shell", "getprop", prop], timeout=30)
        except (OSError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def list_devices(self) -> List[Device]:
        if not self.is_supported():
            return []
        try:
            result = run_tool([self.adb_path, "devices"], timeout=30)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.console.log(f"[yellow]Cannot list Android devices:[/] {e}")
            return []

        devices = []
        for serial in parse_adb_devices(result.stdout):
            devices.append(
                Device(
                    identifier=serial,
                    name=self._getprop(serial, "ro.product.model") or serial,
                    family=PlatformFamily.ANDROID,
                    connection=serial,
                    arch=normalize_arch(self._getprop(serial, "ro.product.cpu.abi")),
                    os_version=self._getprop(serial, "ro.build.version.release"),
                )
            )
        return devices


class DeviceDiscovery:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.listers = {
            PlatformFamily.IOS: IosDeviceLister(settings.idevice_id_path, settings.ideviceinfo_path),
            PlatformFamily.ANDROID: AndroidDeviceLister(settings.adb_path),
        }

    def list_devices(self, family: Optional[PlatformFamily] = None) -> List[Device]:
        devices = []
        for lister_family, lister in self.listers.items():
            if family is None or family is lister_family:
                devices.extend(lister.list_devices())
        return devices

    def find_devices(self, target: Target, requested: Optional[str] = None) -> List[Device]:
        """The requested device, or every attached device compatible with target.

        A requested device is looked up by identifier or name.
        """
        devices = self.list_devices(target.family)
        if requested:
            matches = [
                d for d in devices if requested in (d.identifier, d.name) and target.accepts(d)
            ]
            if not matches:
                raise DeviceNotFound(requested, target.triple)
            return matches[:1]

        compatible = [d for d in devices if target.accepts(d)]
        if not compatible:
            raise DeviceNotFound(None, target.triple)
        return compatible


def transport_for(device: Device, settings: Settings) -> DeviceTransport:
    if device.family is PlatformFamily.IOS:
        return IosTransport(device, settings.ios_deploy_path, settings.idevice_id_path)
    return AndroidTransport(device, settings.adb_path, settings.android_remote_dir)
