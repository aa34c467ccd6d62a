"""
Backup container -- a minimal ZIP writer/reader for JSON payloads.

Only the "store" method (no compression) is produced or accepted. That is
all an exported backup needs, and the result still opens in any standard
unzip tool.

Layout (all fields little-endian):
    [local file header 30 B + name][payload] ... repeated per entry
    [central directory record 46 B + name]   ... repeated per entry
    [end of central directory 22 B]

CRC32 uses the IEEE 802.3 reflected polynomial, which is exactly what
``zlib.crc32`` computes.
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from . import EclipseVaultError

logger = logging.getLogger("eclipsevault.container")

LOCAL_FILE_HEADER_SIGNATURE = 0x04034B50
CENTRAL_DIRECTORY_SIGNATURE = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIGNATURE = 0x06054B50

STORE_METHOD = 0
VERSION_NEEDED = 20

_LOCAL_HEADER = struct.Struct("<IHHHHHIIIHH")
_CENTRAL_HEADER = struct.Struct("<IHHHHHHIIIHHHHHII")
_END_RECORD = struct.Struct("<IHHHHIIH")

_EOCD_MARKER = struct.pack("<I", END_OF_CENTRAL_DIRECTORY_SIGNATURE)


class InvalidContainer(EclipseVaultError):
    """Raised when bytes are not a readable backup container."""


class UnsupportedCompression(EclipseVaultError):
    """Raised when a container entry uses anything but the store method."""


@dataclass(frozen=True)
class ContainerEntry:
    """One named text file inside a container."""

    file_name: str
    content: str


def crc32(data: bytes) -> int:
    """CRC32 (IEEE 802.3) of ``data`` as an unsigned 32-bit integer."""
    return zlib.crc32(data) & 0xFFFFFFFF


def to_dos_time_date(when: datetime) -> tuple[int, int]:
    """Convert a wall-clock time to the (time, date) DOS field pair.

    The DOS epoch is 1980, so earlier years are clamped to it.
    """
    year = max(when.year, 1980)
    dos_time = ((when.hour & 0x1F) << 11) | ((when.minute & 0x3F) << 5) | ((when.second // 2) & 0x1F)
    dos_date = (((year - 1980) & 0x7F) << 9) | ((when.month & 0x0F) << 5) | (when.day & 0x1F)
    return dos_time, dos_date


def encode(file_name: str, content: str, when: Optional[datetime] = None) -> bytes:
    """Pack one text file into a store-only ZIP container.

    Args:
        file_name: Name of the entry inside the container.
        content: Text payload, written as UTF-8.
        when: Modification time for the DOS fields. Defaults to now.

    Returns:
        The container bytes.
    """
    return encode_entries([ContainerEntry(file_name, content)], when=when)


def encode_entries(entries: list[ContainerEntry], when: Optional[datetime] = None) -> bytes:
    """Pack several text files into one store-only ZIP container.

    Args:
        entries: Files to pack, in order.
        when: Modification time for the DOS fields. Defaults to now.

    Returns:
        The container bytes.
    """
    dos_time, dos_date = to_dos_time_date(when or datetime.now())

    local_parts: list[bytes] = []
    central_parts: list[bytes] = []
    offset = 0

    for entry in entries:
        name_bytes = entry.file_name.encode("utf-8")
        data_bytes = entry.content.encode("utf-8")
        checksum = crc32(data_bytes)
        size = len(data_bytes)

        local_header = _LOCAL_HEADER.pack(
            LOCAL_FILE_HEADER_SIGNATURE,
            VERSION_NEEDED,
            0,  # flags
            STORE_METHOD,
            dos_time,
            dos_date,
            checksum,
            size,
            size,
            len(name_bytes),
            0,  # extra length
        )
        central_header = _CENTRAL_HEADER.pack(
            CENTRAL_DIRECTORY_SIGNATURE,
            VERSION_NEEDED,  # version made by
            VERSION_NEEDED,
            0,  # flags
            STORE_METHOD,
            dos_time,
            dos_date,
            checksum,
            size,
            size,
            len(name_bytes),
            0,  # extra length
            0,  # comment length
            0,  # disk start
            0,  # internal attributes
            0,  # external attributes
            offset,
        )

        local_parts.append(local_header + name_bytes + data_bytes)
        central_parts.append(central_header + name_bytes)
        offset += len(local_header) + len(name_bytes) + size

    central_directory = b"".join(central_parts)
    end_record = _END_RECORD.pack(
        END_OF_CENTRAL_DIRECTORY_SIGNATURE,
        0,  # disk number
        0,  # disk with central directory
        len(entries),
        len(entries),
        len(central_directory),
        offset,
        0,  # comment length
    )

    return b"".join(local_parts) + central_directory + end_record


def _find_end_of_central_directory(data: bytes) -> int:
    """Locate the EOCD record by scanning backward from the end.

    The record is followed by a variable-length comment, so it has no
    fixed offset.
    """
    if len(data) < _END_RECORD.size:
        return -1
    return data.rfind(_EOCD_MARKER, 0, len(data) - _END_RECORD.size + len(_EOCD_MARKER))


def _unpack_at(layout: struct.Struct, data: bytes, offset: int, what: str) -> tuple:
    if offset < 0 or offset + layout.size > len(data):
        raise InvalidContainer(f"Invalid container: {what} out of range")
    return layout.unpack_from(data, offset)


def _decode_text(raw: bytes, what: str) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidContainer(f"Invalid container: {what} is not UTF-8") from exc


def decode_entries(data: bytes) -> list[ContainerEntry]:
    """Unpack every entry of a store-only ZIP container.

    Args:
        data: Container bytes.

    Returns:
        Entries in central-directory order.

    Raises:
        InvalidContainer: Missing end marker, bad signatures, truncated data,
            or a payload whose CRC32 does not match.
        UnsupportedCompression: An entry is not stored uncompressed.
    """
    eocd_offset = _find_end_of_central_directory(data)
    if eocd_offset < 0:
        raise InvalidContainer("Invalid container: end of central directory not found")

    (_, _, _, _, total_entries, _, directory_offset, _) = _unpack_at(
        _END_RECORD, data, eocd_offset, "end of central directory"
    )

    entries: list[ContainerEntry] = []
    cursor = directory_offset
    for _ in range(total_entries):
        record = _unpack_at(_CENTRAL_HEADER, data, cursor, "central directory")
        (
            signature, _, _, _, method, _, _, checksum, compressed_size, _,
            name_length, extra_length, comment_length, _, _, _, local_offset,
        ) = record

        if signature != CENTRAL_DIRECTORY_SIGNATURE:
            raise InvalidContainer("Invalid container: central directory header not found")
        if method != STORE_METHOD:
            raise UnsupportedCompression(f"Unsupported compression method: {method}")

        name_start = cursor + _CENTRAL_HEADER.size
        next_record = name_start + name_length + extra_length + comment_length
        if next_record > len(data):
            raise InvalidContainer("Invalid container: out-of-range central directory")
        file_name = _decode_text(data[name_start:name_start + name_length], "file name")

        local = _unpack_at(_LOCAL_HEADER, data, local_offset, "local file header")
        if local[0] != LOCAL_FILE_HEADER_SIGNATURE:
            raise InvalidContainer("Invalid container: local file header not found")
        local_name_length, local_extra_length = local[9], local[10]

        data_start = local_offset + _LOCAL_HEADER.size + local_name_length + local_extra_length
        data_end = data_start + compressed_size
        if data_end > len(data):
            raise InvalidContainer("Invalid container: out-of-range file data")

        payload = data[data_start:data_end]
        if crc32(payload) != checksum:
            raise InvalidContainer(f"Invalid container: CRC32 mismatch for {file_name}")

        entries.append(ContainerEntry(file_name, _decode_text(payload, "payload")))
        cursor = next_record

    if not entries:
        raise InvalidContainer("Invalid container: no entries")
    logger.debug("Decoded %d container entries", len(entries))

    return entries


def decode(data: bytes) -> tuple[str, str]:
    """Unpack the first entry of a container.

    Args:
        data: Container bytes.

    Returns:
        Tuple of (file_name, content).
    """
    first = decode_entries(data)[0]
    return first.file_name, first.content
