import struct
import sys
from pathlib import Path
import importlib
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bcfz import LITERAL_BYTE_COUNTS  # noqa: E402
from gpx import SECTOR_SIZE  # noqa: E402


class BitWriter:
    """Builds BCFZ bodies bit by bit, filling each byte from its top bit."""

    def __init__(self):
        self.buffer = bytearray()
        self.bit_buffer = 0
        self.bit_count = 0

    def write_bit(self, bit: int):
        self.bit_buffer = (self.bit_buffer << 1) | (bit & 1)
        self.bit_count += 1
        if self.bit_count == 8:
            self.buffer.append(self.bit_buffer)
            self.bit_buffer = 0
            self.bit_count = 0
        return self

    def lsb_first(self, value: int, nbits: int):
        for i in range(nbits):
            self.write_bit(value >> i)
        return self

    def msb_first(self, value: int, nbits: int):
        for i in range(nbits - 1, -1, -1):
            self.write_bit(value >> i)
        return self

    def literal(self, payload: bytes):
        """Write ``payload`` as literal chunks of at most three bytes."""
        step = LITERAL_BYTE_COUNTS[-1]
        for start in range(0, len(payload), step):
            chunk = payload[start:start + step]
            self.write_bit(0)
            self.lsb_first(LITERAL_BYTE_COUNTS.index(len(chunk)), 2)
            for byte in chunk:
                self.msb_first(byte, 8)
        return self

    def backref(self, offset: int, length: int, word_size: int = 4):
        self.write_bit(1)
        self.msb_first(word_size, 4)
        self.lsb_first(offset, word_size)
        self.lsb_first(length, word_size)
        return self

    def flush(self) -> bytes:
        """Return the body, padding the last byte with zero bits."""
        out = bytearray(self.buffer)
        if self.bit_count > 0:
            out.append(self.bit_buffer << (8 - self.bit_count))
        return bytes(out)


def build_bcfs(files):
    """Lay out ``(name, data)`` pairs as a BCFS filesystem (no magic).

    Each file gets an entry sector directly followed by its data sectors.
    """
    out = bytearray(SECTOR_SIZE)
    for name, payload in files:
        entry_index = len(out) // SECTOR_SIZE
        nblocks = (len(payload) + SECTOR_SIZE - 1) // SECTOR_SIZE
        entry = bytearray(SECTOR_SIZE)
        struct.pack_into("<i", entry, 0, 2)
        raw_name = name.encode("utf-8")
        entry[4:4 + len(raw_name)] = raw_name
        struct.pack_into("<i", entry, 0x8C, len(payload))
        for i in range(nblocks):
            struct.pack_into("<i", entry, 0x94 + 4 * i, entry_index + 1 + i)
        out += entry
        for i in range(nblocks):
            chunk = payload[i * SECTOR_SIZE:(i + 1) * SECTOR_SIZE]
            out += chunk.ljust(SECTOR_SIZE, b"\x00")
    return bytes(out)


def build_bcfz(inner: bytes) -> bytes:
    """Wrap ``inner`` into a BCFZ file made of literal chunks only."""
    body = BitWriter().literal(inner).flush()
    return b"BCFZ" + struct.pack("<i", len(inner)) + body


@pytest.fixture()
def bit_writer():
    """Factory for fresh test-side bit writers."""
    return BitWriter


@pytest.fixture()
def gpx_files():
    """Files stored in the sample container."""
    return [
        ("score.gpif", b"<GPIF>" + b"x" * 5000 + b"</GPIF>"),
        ("misc.xml", b"<misc/>"),
    ]


@pytest.fixture()
def bcfs_bytes(gpx_files):
    """A BCFS container, magic included."""
    return b"BCFS" + build_bcfs(gpx_files)


@pytest.fixture()
def gpx_bytes(bcfs_bytes):
    """A BCFZ-compressed .gpx file wrapping :func:`bcfs_bytes`."""
    return build_bcfz(bcfs_bytes)


@pytest.fixture()
def wrap_bcfz():
    """Provide the BCFZ wrapper helper without importing conftest."""
    return build_bcfz


@pytest.fixture()
def m():
    """Lazily import the main module for tests to avoid module-level import."""
    return importlib.import_module("main")


@pytest.fixture()
def no_progress(monkeypatch, m):
    """Suppress progress rendering in main module during tests."""
    calls = []

    def _stub(line: str):
        calls.append(line)

    monkeypatch.setattr(m, "_print_progress", _stub)
    return calls


@pytest.fixture()
def progress_recorder():
    """Provide a reusable progress callback and its call log."""
    calls = []

    def cb(done, total):
        calls.append((done, total))

    return cb, calls
