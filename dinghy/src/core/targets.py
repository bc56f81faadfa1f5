from dataclasses import dataclass
from typing import Optional

from dinghy.src.core.errors import UnsupportedTarget
from dinghy.src.core.models import Device, PlatformFamily

# Device-reported CPU names and triple prefixes, normalised to one spelling
ARCH_ALIASES = {
    "arm64": "aarch64",
    "arm64e": "aarch64",
    "aarch64": "aarch64",
    "arm64-v8a": "aarch64",
    "armv7": "armv7",
    "armv7s": "armv7",
    "armv7a": "armv7",
    "armeabi-v7a": "armv7",
    "armeabi": "armv7",
    "arm": "armv7",
    "thumbv7neon": "armv7",
    "i386": "i386",
    "i686": "i386",
    "x86": "i386",
    "x86_64": "x86_64",
}


def normalize_arch(arch: Optional[str]) -> Optional[str]:
    if not arch:
        return None
    return ARCH_ALIASES.get(arch.strip().lower(), arch.strip().lower())


@dataclass(frozen=True)
class Target:
    """A parsed target triple"""

    triple: str
    arch: str
    family: PlatformFamily

    def accepts(self, device: Device) -> bool:
        """Whether an executable built for this target can run on the device"""
        if device.family is not self.family:
            return False
        # Devices that did not report an architecture are given the benefit of the doubt
        if device.arch is None:
            return True
        return normalize_arch(device.arch) == self.arch

    @property
    def needs_signing(self) -> bool:
        return self.family is PlatformFamily.IOS


def parse_target(triple: str) -> Target:
    """Map a target triple such as aarch64-apple-ios onto a device family"""
    parts = triple.strip().split("-")
    if len(parts) < 3:
        raise UnsupportedTarget(triple)

    arch = normalize_arch(parts[0])
    if parts[1] == "apple" and parts[2] == "ios":
        family = PlatformFamily.IOS
    elif "linux" in parts[1:] and any(p.startswith("android") for p in parts[2:]):
        family = PlatformFamily.ANDROID
    else:
        raise UnsupportedTarget(triple)

    return Target(triple=triple, arch=arch, family=family)
