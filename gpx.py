"""GuitarPro 6 (.gpx) container reading.

A .gpx file is either a ``BCFZ`` file, whose decompressed body is a ``BCFS``
sector filesystem, or a bare ``BCFS`` filesystem.
"""
import struct
from typing import Callable, List, NamedTuple, Optional

from loguru import logger

import bcfz

MAGIC_BCFZ = b"BCFZ"  #: Compressed container
MAGIC_BCFS = b"BCFS"  #: Sector filesystem
SECTOR_SIZE = 0x1000

FILE_ENTRY = 2
ENTRY_NAME_OFFSET = 0x04
ENTRY_NAME_SIZE = 127
ENTRY_SIZE_OFFSET = 0x8C
ENTRY_BLOCKS_OFFSET = 0x94


class GpxFile(NamedTuple):
    name: str
    data: bytes


def check_file_type(data: bytes) -> Optional[str]:
    """Identify a container by its magic number.

    :param data: File contents.
    :type data: bytes
    :returns: ``"BCFZ"``, ``"BCFS"`` or ``None`` if unknown.
    :rtype: Optional[str]
    """
    magic = bytes(data[:4])
    if magic == MAGIC_BCFZ:
        return "BCFZ"
    if magic == MAGIC_BCFS:
        return "BCFS"
    return None


def _read_int32(data: bytes, offset: int) -> int:
    if offset < 0 or offset + 4 > len(data):
        raise ValueError(
            f"Truncated container: int32 at {offset}, size {len(data)}"
        )
    return struct.unpack_from("<i", data, offset)[0]


def decompress_bcfz(
    data: bytes,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> bytes:
    """Decompress a whole BCFZ file.

    Layout:
    - Magic: 'BCFZ' (4 bytes)
    - Decompressed size: int32, little-endian
    - Compressed body (see :mod:`bcfz`)

    :param data: File contents, magic included.
    :type data: bytes
    :param on_progress: Optional callback ``on_progress(done, total)``.
    :type on_progress: Optional[Callable[[int, int], None]]
    :returns: Decompressed body.
    :rtype: bytes
    :raises ValueError: If the header is invalid.
    :raises bcfz.DecodeError: If the compressed body is corrupt.
    """
    if check_file_type(data) != "BCFZ":
        raise ValueError("Invalid BCFZ file (bad magic)")
    if len(data) < 8:
        raise ValueError("Invalid BCFZ file (missing size header)")
    expected = _read_int32(data, 4)
    if expected < 0:
        raise ValueError(f"Invalid BCFZ decompressed size: {expected}")
    return bcfz.decode(data[8:], expected, on_progress=on_progress)


def decompress_bcfs(data: bytes) -> List[GpxFile]:
    """List the files stored in a BCFS sector filesystem.

    ``data`` starts right after the 'BCFS' magic and is split into
    :data:`SECTOR_SIZE` sectors. A sector starting with int32 ``2`` is a
    file entry:

    - ``+0x04``: file name (127 bytes, NUL padded)
    - ``+0x8C``: file size (int32)
    - ``+0x94``: int32 list of data sector indices, terminated by 0

    Scanning resumes after the last data sector of each file, or after the
    entry itself when that sector lies before it.

    :param data: Filesystem contents without the magic.
    :type data: bytes
    :returns: Files in storage order.
    :rtype: List[GpxFile]
    :raises ValueError: If an entry points outside ``data``.
    """
    files: List[GpxFile] = []
    offset = 0
    while True:
        offset += SECTOR_SIZE
        if offset + 3 >= len(data):
            break
        if _read_int32(data, offset) != FILE_ENTRY:
            continue

        entry = offset
        blocks_at = entry + ENTRY_BLOCKS_OFFSET
        file_data = bytearray()
        block_count = 0
        while True:
            block = _read_int32(data, blocks_at + 4 * block_count)
            if block == 0:
                break
            sector = block * SECTOR_SIZE
            if sector < 0 or sector + SECTOR_SIZE > len(data):
                raise ValueError(
                    f"Truncated container: sector {block} out of range"
                )
            file_data.extend(data[sector:sector + SECTOR_SIZE])
            offset = sector
            block_count += 1
        # Never rescan from before this entry.
        offset = max(offset, entry)

        size = _read_int32(data, entry + ENTRY_SIZE_OFFSET)
        name_at = entry + ENTRY_NAME_OFFSET
        raw_name = bytes(data[name_at:name_at + ENTRY_NAME_SIZE])
        name = raw_name.split(b"\x00", 1)[0].decode("utf-8", "replace")
        if 0 <= size <= len(file_data):
            files.append(GpxFile(name, bytes(file_data[:size])))
            logger.debug(
                f"BCFS entry {name}: {size} bytes in {block_count} sectors"
            )
        else:
            logger.warning(
                f"Skipping BCFS entry {name}: declares {size} bytes, "
                f"{len(file_data)} stored"
            )
    return files


def read(
    data: bytes,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> List[GpxFile]:
    """Read every file stored in a .gpx container.

    :param data: File contents.
    :type data: bytes
    :param on_progress: Optional decompression progress callback.
    :type on_progress: Optional[Callable[[int, int], None]]
    :returns: Files in storage order.
    :rtype: List[GpxFile]
    :raises ValueError: If the container format is not recognised.
    """
    kind = check_file_type(data)
    if kind == "BCFZ":
        logger.debug("File type BCFZ")
        inner = decompress_bcfz(data, on_progress=on_progress)
        inner_kind = check_file_type(inner)
        if inner_kind == "BCFZ":
            raise ValueError("BCFZ file contains another BCFZ file")
        if inner_kind != "BCFS":
            raise ValueError("BCFZ file does not contain a BCFS filesystem")
        return decompress_bcfs(inner[4:])
    if kind == "BCFS":
        logger.debug("File type BCFS")
        return decompress_bcfs(data[4:])
    raise ValueError("Unknown file format (bad magic)")
