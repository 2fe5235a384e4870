# hytainstall/core/validator.py
"""
Cheap structural check that a patched client is a plausible native
binary for this platform.  Not a security control: it only decides
whether an install is usable or has to be thrown away and reinstalled.
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path

from hytainstall.core.platform import ExecutableFormat, PlatformInfo

logger = logging.getLogger(__name__)

MIN_EXECUTABLE_SIZE = 4096

_ELF_MAGIC = b"\x7fELF"
_MACHO_MAGICS = (
    b"\xcf\xfa\xed\xfe",   # 64-bit
    b"\xce\xfa\xed\xfe",   # 32-bit
    b"\xca\xfe\xba\xbe",   # universal
)
_PE_OFFSET_POS = 0x3C
_PE_SIGNATURE = b"PE\x00\x00"


def _check_pe(fh, size: int) -> bool:
    if fh.read(2) != b"MZ":
        return False
    fh.seek(_PE_OFFSET_POS)
    raw = fh.read(4)
    if len(raw) != 4:
        return False
    (pe_offset,) = struct.unpack("<i", raw)
    if not (0 < pe_offset < size - 4):
        return False
    fh.seek(pe_offset)
    return fh.read(4) == _PE_SIGNATURE


def is_valid_executable(path: Path, platform_info: PlatformInfo) -> bool:
    """True if `path` exists, is big enough, and carries the right header."""
    try:
        if not path.is_file():
            return False
        size = path.stat().st_size
        if size < MIN_EXECUTABLE_SIZE:
            logger.debug("%s too small (%d bytes)", path, size)
            return False

        with path.open("rb") as fh:
            fmt = platform_info.executable_format
            if fmt is ExecutableFormat.pe:
                ok = _check_pe(fh, size)
            elif fmt is ExecutableFormat.elf:
                ok = fh.read(4) == _ELF_MAGIC
            else:
                ok = fh.read(4) in _MACHO_MAGICS
    except OSError as exc:
        logger.debug("cannot inspect %s: %s", path, exc)
        return False

    if not ok:
        logger.debug("%s has no valid %s header", path, fmt.value)
    return ok
