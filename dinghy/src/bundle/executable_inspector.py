from pathlib import Path
from typing import Optional

import lief
from lief import MachO

from dinghy.logger import get_console
from dinghy.src.core.errors import AssemblyError


def _format_version(version) -> Optional[str]:
    parts = [int(p) for p in version]
    if not parts or not any(parts):
        return None
    # 9.0.0 -> 9.0, 12.4.1 stays as is
    while len(parts) > 2 and parts[-1] == 0:
        parts.pop()
    return ".".join(str(p) for p in parts)


def minimum_os_version(executable: Path) -> Optional[str]:
    """Minimum OS version recorded in a Mach-O executable, if any.

    Fat binaries report the lowest version among their slices. Non Mach-O
    files return None.
    """
    console = get_console()
    if not lief.is_macho(str(executable)):
        return None

    parsed = MachO.parse(str(executable))
    if parsed is None:
        return None

    if isinstance(parsed, MachO.FatBinary):
        binaries = [parsed.at(i) for i in range(parsed.size)]
    else:
        binaries = [parsed]

    versions = []
    for binary in binaries:
        if binary.has_encryption_info and binary.encryption_info.crypt_id != 0:
            raise AssemblyError(f"Executable is encrypted: {executable}")
        if binary.has_build_version:
            version = _format_version(binary.build_version.minos)
        elif binary.has_version_min:
            version = _format_version(binary.version_min.version)
        else:
            version = None
        if version:
            versions.append(version)

    if not versions:
        console.log(f"[yellow]No minimum OS version in {executable.name}[/]")
        return None

    return min(versions, key=lambda v: tuple(int(p) for p in v.split(".")))
