# hytainstall/core/platform.py
"""
Host platform capabilities: remote path segment, executable names and
the binary format the validator expects.  Everything platform specific
is answered by one PlatformInfo object that gets passed around instead
of `platform.system()` checks scattered through the code.
"""

from __future__ import annotations

import enum
import platform as _platform

from pydantic import BaseModel, ConfigDict


class OperatingSystem(str, enum.Enum):
    windows = "windows"
    linux = "linux"
    darwin = "darwin"


class Architecture(str, enum.Enum):
    amd64 = "amd64"
    arm64 = "arm64"
    x86 = "x86"


class ExecutableFormat(str, enum.Enum):
    pe = "pe"
    elf = "elf"
    macho = "macho"


_FORMATS = {
    OperatingSystem.windows: ExecutableFormat.pe,
    OperatingSystem.linux: ExecutableFormat.elf,
    OperatingSystem.darwin: ExecutableFormat.macho,
}

_MACHINE_ALIASES = {
    "x86_64": Architecture.amd64,
    "amd64": Architecture.amd64,
    "x64": Architecture.amd64,
    "arm64": Architecture.arm64,
    "aarch64": Architecture.arm64,
    "armv8": Architecture.arm64,
    "i386": Architecture.x86,
    "i686": Architecture.x86,
    "x86": Architecture.x86,
}


class PlatformInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    os: OperatingSystem
    arch: Architecture

    @property
    def path_segment(self) -> str:
        """`linux/amd64` – the part of the patch URL after the base."""
        return f"{self.os.value}/{self.arch.value}"

    @property
    def tool_channel(self) -> str:
        """butler release channel, e.g. `windows-amd64`."""
        return f"{self.os.value}-{self.arch.value}"

    @property
    def executable_suffix(self) -> str:
        return ".exe" if self.os is OperatingSystem.windows else ""

    @property
    def executable_format(self) -> ExecutableFormat:
        return _FORMATS[self.os]

    @property
    def game_executable(self) -> str:
        return "HytaleClient" + self.executable_suffix

    @property
    def java_executable(self) -> str:
        return "java" + self.executable_suffix

    @property
    def tool_executable(self) -> str:
        return "butler" + self.executable_suffix


def detect_platform() -> PlatformInfo:
    """Map the running interpreter's host to a PlatformInfo.

    Unknown systems fall back to Windows and unknown CPUs to amd64, the
    same defaults the patch server is most likely to carry.
    """
    system = _platform.system().lower()
    if system == "linux":
        os_name = OperatingSystem.linux
    elif system == "darwin":
        os_name = OperatingSystem.darwin
    else:
        os_name = OperatingSystem.windows

    arch = _MACHINE_ALIASES.get(_platform.machine().lower(), Architecture.amd64)
    return PlatformInfo(os=os_name, arch=arch)
