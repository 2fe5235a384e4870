import struct

import pytest

from hytainstall.core.platform import Architecture, OperatingSystem, PlatformInfo
from hytainstall.core.validator import MIN_EXECUTABLE_SIZE, is_valid_executable

WINDOWS = PlatformInfo(os=OperatingSystem.windows, arch=Architecture.amd64)
LINUX = PlatformInfo(os=OperatingSystem.linux, arch=Architecture.amd64)
MAC = PlatformInfo(os=OperatingSystem.darwin, arch=Architecture.arm64)


def _pe(pe_offset=0x80, signature=b"PE\x00\x00", size=8192) -> bytes:
    data = bytearray(size)
    data[0:2] = b"MZ"
    data[0x3C:0x40] = struct.pack("<i", pe_offset)
    if 0 <= pe_offset <= size - 4:
        data[pe_offset:pe_offset + 4] = signature
    return bytes(data)


def _write(tmp_path, data: bytes, name="HytaleClient"):
    path = tmp_path / name
    path.write_bytes(data)
    return path


def test_valid_pe(tmp_path):
    assert is_valid_executable(_write(tmp_path, _pe()), WINDOWS)


@pytest.mark.parametrize(
    "data",
    [
        _pe(signature=b"NE\x00\x00"),
        _pe(pe_offset=0),
        _pe(pe_offset=-4),
        _pe(pe_offset=8190),
        b"ZM" + _pe()[2:],
    ],
)
def test_broken_pe(tmp_path, data):
    assert not is_valid_executable(_write(tmp_path, data), WINDOWS)


def test_elf(tmp_path):
    good = _write(tmp_path, b"\x7fELF" + b"\x00" * MIN_EXECUTABLE_SIZE)
    assert is_valid_executable(good, LINUX)
    # right header, wrong platform
    assert not is_valid_executable(good, WINDOWS)


@pytest.mark.parametrize("magic", [b"\xcf\xfa\xed\xfe", b"\xce\xfa\xed\xfe", b"\xca\xfe\xba\xbe"])
def test_macho_variants(tmp_path, magic):
    assert is_valid_executable(_write(tmp_path, magic + b"\x00" * MIN_EXECUTABLE_SIZE), MAC)


def test_too_small_is_rejected_even_with_a_good_header(tmp_path):
    small = _write(tmp_path, b"\x7fELF" + b"\x00" * 100)
    assert not is_valid_executable(small, LINUX)


def test_missing_file_and_directory(tmp_path):
    assert not is_valid_executable(tmp_path / "nope", LINUX)
    assert not is_valid_executable(tmp_path, LINUX)
