#!/usr/bin/env python3
"""
fit_replayer.py: FIT Ride Replayer & Broadcast Writer

Replays recorded FIT activity files (.fit) in real time and republishes every
ride sample as a JSON "focus" snapshot that broadcast overlay bridges poll
from disk.

FIT is the compact binary activity format written by bike computers, smart
trainers and watches. A FIT file is self-describing: definition records
declare the field layout that later data records follow, keyed by a small
local ID that may be redefined at any point in the stream.

Several input files are played back-to-back as one continuous virtual ride.
Each snapshot is written to a temporary file next to the target and renamed
over it, so a polling reader never sees a half-written document.

Usage:
    python3 fit_replayer.py ride.fit                       # Replay to ./focus.json
    python3 fit_replayer.py part1.fit part2.fit -o /srv/focus.json
    python3 fit_replayer.py ride.fit --info                # Print file summary only
    python3 fit_replayer.py ride.fit --dump -o -           # Decoded records as JSON
    python3 fit_replayer.py ride.fit --dump --drop-unknown # Profile-known data only
    python3 fit_replayer.py ride.fit --no-crc-check        # Skip checksum validation

License: MIT
"""

from __future__ import annotations

import argparse
import contextlib
import datetime
import enum
import io
import json
import logging
import os
import signal
import stat
import struct
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Iterator

log = logging.getLogger("fit_replayer")

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────

# File header: size(1) protocol(1) profile(2) data_size(4) ".FIT"(4) [crc(2)]
FIT_MAGIC = b".FIT"
HEADER_SIZES = (12, 14)
TRAILING_CRC_SIZE = 2

# FIT timestamps count seconds from 1989-12-31 00:00:00 UTC.
FIT_EPOCH = datetime.datetime(1989, 12, 31, tzinfo=datetime.timezone.utc)

# Record header byte
#   normal:     0 | definition | developer | reserved | local id (4 bits)
#   compressed: 1 | local id (2 bits) | time offset (5 bits)
HEADER_COMPRESSED_TIMESTAMP = 0x80
HEADER_DEFINITION = 0x40
HEADER_DEVELOPER_DATA = 0x20
HEADER_LOCAL_ID_MASK = 0x0F
COMPRESSED_LOCAL_ID_MASK = 0x60
COMPRESSED_LOCAL_ID_SHIFT = 5
COMPRESSED_TIME_MASK = 0x1F

ARCH_BIG_ENDIAN = 1

# Global message numbers
MESG_FILE_ID = 0
MESG_SESSION = 18
MESG_LAP = 19
MESG_RECORD = 20
MESG_EVENT = 21
MESG_DEVICE_INFO = 23
MESG_ACTIVITY = 34
MESG_FILE_CREATOR = 49
MESG_FIELD_DESCRIPTION = 206
MESG_DEVELOPER_DATA_ID = 207

MESSAGE_NAMES = {
    MESG_FILE_ID: "file_id",
    MESG_SESSION: "session",
    MESG_LAP: "lap",
    MESG_RECORD: "record",
    MESG_EVENT: "event",
    MESG_DEVICE_INFO: "device_info",
    MESG_ACTIVITY: "activity",
    MESG_FILE_CREATOR: "file_creator",
    MESG_FIELD_DESCRIPTION: "field_description",
    MESG_DEVELOPER_DATA_ID: "developer_data_id",
}

# Field numbers shared by every message
FIELD_TIMESTAMP = 253
FIELD_MESSAGE_INDEX = 254

# Record message (20) field numbers
FIELD_POSITION_LAT = 0
FIELD_POSITION_LONG = 1
FIELD_ALTITUDE = 2
FIELD_HEART_RATE = 3
FIELD_CADENCE = 4
FIELD_DISTANCE = 5
FIELD_SPEED = 6
FIELD_POWER = 7
FIELD_GRADE = 9
FIELD_TEMPERATURE = 13
FIELD_ENHANCED_SPEED = 73
FIELD_ENHANCED_ALTITUDE = 78

BASE_TYPE_NUMBER_MASK = 0x1F

# Broadcast output
DEFAULT_OUTPUT = "focus.json"
OUTPUT_ENV = "FIT_REPLAY_OUTPUT"
SNAPSHOT_VERSION = 1
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────


class FitDecodeError(Exception):
    """Base class for errors that make a FIT stream undecodable."""


class TruncatedStreamError(FitDecodeError):
    """Fewer bytes remained than a read required."""


class InvalidHeaderError(FitDecodeError):
    """The file header has a bad tag or an unsupported length."""


class UnknownDefinitionError(FitDecodeError):
    """A data record referenced a local ID with no preceding definition."""


class CrcMismatchError(FitDecodeError):
    """A header or file checksum did not match the bytes read."""


class PublishError(Exception):
    """The broadcast snapshot could not be written or renamed into place."""


# ─────────────────────────────────────────────────────────────────────────────
# Data classes
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BaseType:
    """A FIT base type: element size, struct code and invalid sentinel."""
    number: int
    name: str
    size: int
    code: str       # struct format character, "" for strings and byte runs
    invalid: Any    # None where the sentinel is a byte pattern

    @property
    def is_float(self) -> bool:
        return self.code in ("f", "d")


BASE_TYPES = {bt.number: bt for bt in (
    BaseType(0x00, "enum", 1, "B", 0xFF),
    BaseType(0x01, "sint8", 1, "b", 0x7F),
    BaseType(0x02, "uint8", 1, "B", 0xFF),
    BaseType(0x03, "sint16", 2, "h", 0x7FFF),
    BaseType(0x04, "uint16", 2, "H", 0xFFFF),
    BaseType(0x05, "sint32", 4, "i", 0x7FFFFFFF),
    BaseType(0x06, "uint32", 4, "I", 0xFFFFFFFF),
    BaseType(0x07, "string", 1, "", None),
    BaseType(0x08, "float32", 4, "f", None),
    BaseType(0x09, "float64", 8, "d", None),
    BaseType(0x0A, "uint8z", 1, "B", 0x00),
    BaseType(0x0B, "uint16z", 2, "H", 0x0000),
    BaseType(0x0C, "uint32z", 4, "I", 0x00000000),
    BaseType(0x0D, "byte", 1, "", None),
    BaseType(0x0E, "sint64", 8, "q", 0x7FFFFFFFFFFFFFFF),
    BaseType(0x0F, "uint64", 8, "Q", 0xFFFFFFFFFFFFFFFF),
    BaseType(0x10, "uint64z", 8, "Q", 0),
)}
BASE_TYPE_STRING = BASE_TYPES[0x07]
BASE_TYPE_BYTE = BASE_TYPES[0x0D]


@dataclass(frozen=True)
class FieldProfile:
    """Name, scale and offset of a well-known field: value = raw / scale - offset."""
    name: str
    scale: float = 1
    offset: float = 0
    units: str = ""


COMMON_FIELDS = {
    FIELD_TIMESTAMP: FieldProfile("timestamp", units="s"),
    FIELD_MESSAGE_INDEX: FieldProfile("message_index"),
}

FIELD_PROFILES: dict[int, dict[int, FieldProfile]] = {
    MESG_FILE_ID: {
        0: FieldProfile("type"),
        1: FieldProfile("manufacturer"),
        2: FieldProfile("product"),
        3: FieldProfile("serial_number"),
        4: FieldProfile("time_created", units="s"),
        5: FieldProfile("number"),
        8: FieldProfile("product_name"),
    },
    MESG_RECORD: {
        FIELD_POSITION_LAT: FieldProfile("position_lat", units="semicircles"),
        FIELD_POSITION_LONG: FieldProfile("position_long", units="semicircles"),
        FIELD_ALTITUDE: FieldProfile("altitude", 5, 500, "m"),
        FIELD_HEART_RATE: FieldProfile("heart_rate", units="bpm"),
        FIELD_CADENCE: FieldProfile("cadence", units="rpm"),
        FIELD_DISTANCE: FieldProfile("distance", 100, 0, "m"),
        FIELD_SPEED: FieldProfile("speed", 1000, 0, "m/s"),
        FIELD_POWER: FieldProfile("power", units="watts"),
        FIELD_GRADE: FieldProfile("grade", 100, 0, "%"),
        FIELD_TEMPERATURE: FieldProfile("temperature", units="C"),
        FIELD_ENHANCED_SPEED: FieldProfile("enhanced_speed", 1000, 0, "m/s"),
        FIELD_ENHANCED_ALTITUDE: FieldProfile("enhanced_altitude", 5, 500, "m"),
    },
}


@dataclass(frozen=True)
class FieldDefinition:
    """One field of a record layout as declared by a definition record."""
    number: int
    size: int
    base_type: BaseType
    developer_index: int | None = None  # developer data index for developer fields


@dataclass
class RecordLayout:
    """Field layout bound to a local definition ID until redefined."""
    local_id: int
    mesg_num: int
    byte_order: str                 # "little" or "big"
    fields: list[FieldDefinition] = field(default_factory=list)
    developer_fields: list[FieldDefinition] = field(default_factory=list)

    @property
    def data_size(self) -> int:
        return sum(fd.size for fd in self.fields + self.developer_fields)


@dataclass
class RawRecord:
    """A decoded data record. Absent fields are missing from ``fields``."""
    mesg_num: int
    fields: dict[int, Any] = field(default_factory=dict)
    developer_fields: dict[tuple[int, int], bytes] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return MESSAGE_NAMES.get(self.mesg_num, f"unknown_{self.mesg_num}")


@dataclass(frozen=True)
class RideSample:
    """A single ride data point. ``None`` means the value was not recorded."""
    timestamp: int                      # Seconds since FIT epoch (1989-12-31)
    power: int | None = None            # W
    cadence: int | None = None          # rpm
    heart_rate: int | None = None       # bpm
    speed: float | None = None          # m/s
    distance: float | None = None       # m, cumulative
    altitude: float | None = None       # m
    grade: float | None = None          # %

    @property
    def utc(self) -> datetime.datetime:
        return fit_time_to_utc(self.timestamp)


@dataclass(frozen=True)
class FitHeader:
    """The 12- or 14-byte header opening every FIT segment."""
    header_size: int
    protocol_version: int
    profile_version: int
    data_size: int
    header_crc: int = 0  # 0 when absent or not computed

    @property
    def protocol(self) -> str:
        return f"{self.protocol_version >> 4}.{self.protocol_version & 0x0F}"

    @property
    def profile(self) -> str:
        return f"{self.profile_version // 100}.{self.profile_version % 100:02d}"


@dataclass
class PlaybackState:
    """Progress of one playback run. Owned and mutated by ReplayScheduler."""
    output_path: Path
    file_index: int = -1
    last_sample: RideSample | None = None
    elapsed: float = 0.0        # Virtual ride seconds since the first sample
    emitted: int = 0
    cancelled: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# Utility functions
# ─────────────────────────────────────────────────────────────────────────────

# FIT CRC-16 nibble table (CRC-16/ARC, initial value 0).
_CRC_TABLE = (
    0x0000, 0xCC01, 0xD801, 0x1400, 0xF001, 0x3C00, 0x2800, 0xE401,
    0xA001, 0x6C00, 0x7800, 0xB401, 0x5000, 0x9C01, 0x8801, 0x4400,
)


def fit_crc16(data: bytes, crc: int = 0) -> int:
    """Fold ``data`` into a running FIT CRC-16 and return the new value."""
    for byte in data:
        tmp = _CRC_TABLE[crc & 0xF]
        crc = (crc >> 4) & 0x0FFF
        crc = crc ^ tmp ^ _CRC_TABLE[byte & 0xF]
        tmp = _CRC_TABLE[crc & 0xF]
        crc = (crc >> 4) & 0x0FFF
        crc = crc ^ tmp ^ _CRC_TABLE[(byte >> 4) & 0xF]
    return crc


def fit_time_to_utc(timestamp: int) -> datetime.datetime:
    """Convert a FIT timestamp (seconds since 1989-12-31) to an aware UTC datetime."""
    return FIT_EPOCH + datetime.timedelta(seconds=timestamp)


def expand_compressed_timestamp(reference: int, time_offset: int) -> int:
    """Rebuild a full timestamp from a 5-bit offset and the previous timestamp.

    The offset replaces the low five bits of ``reference``. When it is smaller
    than those bits the counter has wrapped, so the result moves into the next
    32-second window.
    """
    timestamp = (reference & ~COMPRESSED_TIME_MASK) + time_offset
    if time_offset < (reference & COMPRESSED_TIME_MASK):
        timestamp += COMPRESSED_TIME_MASK + 1
    return timestamp


def field_profile(mesg_num: int, number: int) -> FieldProfile | None:
    profile = FIELD_PROFILES.get(mesg_num, {}).get(number)
    return profile if profile is not None else COMMON_FIELDS.get(number)


def field_name(mesg_num: int, number: int) -> str:
    profile = field_profile(mesg_num, number)
    return profile.name if profile is not None else f"unknown_{number}"


def decode_field(raw: bytes, base_type: BaseType, byte_order: str = "little") -> Any:
    """Decode one field's bytes, resolving invalid sentinels to ``None``.

    Returns a scalar for single-element fields, a tuple for arrays, a str for
    strings and bytes for byte runs. ``None`` means the field is absent.
    """
    if not raw:
        return None
    if base_type is BASE_TYPE_STRING:
        text = raw.split(b"\x00", 1)[0]
        return text.decode("utf-8", errors="replace") or None
    if not base_type.code:
        return None if raw == b"\xff" * len(raw) else bytes(raw)

    size = base_type.size
    count = len(raw) // size
    order = ">" if byte_order == "big" else "<"
    values: list[Any] = list(struct.unpack(f"{order}{count}{base_type.code}", raw))
    for i, value in enumerate(values):
        if base_type.is_float:
            if raw[i * size:(i + 1) * size] == b"\xff" * size:
                values[i] = None
        elif value == base_type.invalid:
            values[i] = None

    if count == 1:
        return values[0]
    if all(v is None for v in values):
        return None
    return tuple(values)


def apply_scale(mesg_num: int, number: int, value: Any) -> Any:
    """Apply the profile's scale and offset to a decoded numeric value."""
    profile = field_profile(mesg_num, number)
    if profile is None or (profile.scale == 1 and profile.offset == 0):
        return value
    if isinstance(value, tuple):
        return tuple(None if v is None else v / profile.scale - profile.offset
                     for v in value)
    if isinstance(value, (int, float)):
        return value / profile.scale - profile.offset
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Binary stream reader
# ─────────────────────────────────────────────────────────────────────────────

class ByteReader:
    """Bounded, checked reads over a binary source.

    Works on open files and in-memory buffers alike. ``length`` bounds the
    readable region; when it is unknown only the source's EOF is checked.
    Every byte handed out is folded into ``crc`` so header and file
    checksums can be verified without a second pass.
    """

    def __init__(self, source: BinaryIO, length: int | None = None):
        self._source = source
        self._length = length
        self._position = 0
        self.crc = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> ByteReader:
        return cls(io.BytesIO(data), len(data))

    def position(self) -> int:
        return self._position

    def remaining(self) -> int | None:
        if self._length is None:
            return None
        return self._length - self._position

    def reset_crc(self) -> None:
        self.crc = 0

    def read_bytes(self, n: int) -> bytes:
        if n < 0:
            raise ValueError(f"negative read length {n}")
        remaining = self.remaining()
        if remaining is not None and n > remaining:
            raise TruncatedStreamError(
                f"needed {n} bytes at offset {self._position}, "
                f"only {remaining} remain"
            )
        data = self._source.read(n)
        if len(data) < n:
            raise TruncatedStreamError(
                f"needed {n} bytes at offset {self._position}, got {len(data)}"
            )
        self._position += n
        self.crc = fit_crc16(data, self.crc)
        return data

    def skip(self, n: int) -> None:
        # Skipped bytes still count towards the checksum.
        self.read_bytes(n)

    def read_uint(self, n: int, byte_order: str = "little") -> int:
        return int.from_bytes(self.read_bytes(n), byte_order)

    def read_int(self, n: int, byte_order: str = "little") -> int:
        return int.from_bytes(self.read_bytes(n), byte_order, signed=True)


# ─────────────────────────────────────────────────────────────────────────────
# Format decoder
# ─────────────────────────────────────────────────────────────────────────────

class DecoderState(enum.Enum):
    AWAITING_FILE_HEADER = "awaiting_file_header"
    DECODING_RECORDS = "decoding_records"
    DONE = "done"
    FAILED = "failed"


class FitDecoder:
    """Single-use decoder for one FIT segment.

    The stream consists of:
      1. A 12- or 14-byte header (size, versions, data size, ".FIT", [CRC])
      2. ``data_size`` bytes of interleaved definition and data records
      3. A 2-byte CRC over everything before it

    Definition records bind a layout to a local ID (0-15) and replace any
    earlier layout with that ID. Data records are decoded against the layout
    currently bound to their ID. The layout table lives on the instance, so
    nothing carries over between segments or files.

    ``records()`` yields RawRecords lazily; records whose message number is
    not in ``mesg_nums`` (when given) are decoded but not yielded.
    """

    def __init__(
        self,
        reader: ByteReader,
        check_crc: bool = True,
        mesg_nums: Iterable[int] | None = None,
    ):
        self.reader = reader
        self.check_crc = check_crc
        self.mesg_nums = frozenset(mesg_nums) if mesg_nums is not None else None
        self.state = DecoderState.AWAITING_FILE_HEADER
        self.header: FitHeader | None = None
        self.layouts: dict[int, RecordLayout] = {}
        self.last_timestamp: int | None = None
        self.record_counts: dict[int, int] = {}

    def records(self) -> Iterator[RawRecord]:
        if self.state is not DecoderState.AWAITING_FILE_HEADER:
            raise RuntimeError("FitDecoder is single-use; create one per segment")
        try:
            start = self.reader.position()
            self.header = self._read_header()
            self.state = DecoderState.DECODING_RECORDS
            end = start + self.header.header_size + self.header.data_size
            while self.reader.position() < end:
                record = self._read_record()
                if record is not None:
                    yield record
            if self.reader.position() > end:
                log.warning("last record overran the declared data size by %d bytes",
                            self.reader.position() - end)
            self._read_file_crc()
        except FitDecodeError:
            self.state = DecoderState.FAILED
            raise
        self.state = DecoderState.DONE

    def _read_header(self) -> FitHeader:
        reader = self.reader
        reader.reset_crc()
        header_size = reader.read_uint(1)
        if header_size not in HEADER_SIZES:
            raise InvalidHeaderError(
                f"unsupported header size {header_size} (expected 12 or 14)"
            )
        protocol_version = reader.read_uint(1)
        profile_version = reader.read_uint(2)
        data_size = reader.read_uint(4)
        tag = reader.read_bytes(4)
        if tag != FIT_MAGIC:
            raise InvalidHeaderError(
                f"invalid FIT tag: expected {FIT_MAGIC!r}, got {tag!r}"
            )
        header_crc = 0
        if header_size == 14:
            computed = reader.crc
            header_crc = reader.read_uint(2)
            if self.check_crc and header_crc and header_crc != computed:
                raise CrcMismatchError(
                    f"header CRC mismatch: stored 0x{header_crc:04X}, "
                    f"computed 0x{computed:04X}"
                )
        header = FitHeader(header_size, protocol_version, profile_version,
                           data_size, header_crc)
        log.debug("FIT header: protocol %s, profile %s, %d data bytes",
                  header.protocol, header.profile, data_size)
        return header

    def _read_file_crc(self) -> None:
        computed = self.reader.crc
        stored = self.reader.read_uint(TRAILING_CRC_SIZE)
        if self.check_crc and stored != computed:
            raise CrcMismatchError(
                f"file CRC mismatch: stored 0x{stored:04X}, computed 0x{computed:04X}"
            )

    def _read_record(self) -> RawRecord | None:
        header = self.reader.read_uint(1)
        if header & HEADER_COMPRESSED_TIMESTAMP:
            local_id = (header & COMPRESSED_LOCAL_ID_MASK) >> COMPRESSED_LOCAL_ID_SHIFT
            return self._read_data(local_id, time_offset=header & COMPRESSED_TIME_MASK)
        local_id = header & HEADER_LOCAL_ID_MASK
        if header & HEADER_DEFINITION:
            self._read_definition(local_id, bool(header & HEADER_DEVELOPER_DATA))
            return None
        return self._read_data(local_id)

    def _read_definition(self, local_id: int, has_developer_fields: bool) -> None:
        """Parse a definition record and bind its layout to ``local_id``.

        Layout:
          reserved(1) architecture(1) global_mesg_num(2) num_fields(1)
          num_fields × [field_num(1) size(1) base_type(1)]
          if developer flag: num_dev_fields(1) × [field_num(1) size(1) dev_index(1)]
        """
        reader = self.reader
        reader.skip(1)
        byte_order = "big" if reader.read_uint(1) & ARCH_BIG_ENDIAN else "little"
        mesg_num = reader.read_uint(2, byte_order)
        num_fields = reader.read_uint(1)
        fields = [self._read_field_definition(mesg_num) for _ in range(num_fields)]

        developer_fields = []
        if has_developer_fields:
            for _ in range(reader.read_uint(1)):
                number, size, index = reader.read_bytes(3)
                developer_fields.append(
                    FieldDefinition(number, size, BASE_TYPE_BYTE, developer_index=index)
                )

        if local_id in self.layouts:
            log.debug("local id %d redefined: message %d -> %d",
                      local_id, self.layouts[local_id].mesg_num, mesg_num)
        layout = RecordLayout(local_id, mesg_num, byte_order, fields, developer_fields)
        self.layouts[local_id] = layout
        log.debug("definition: local id %d = %s (%d fields, %d developer, %d bytes, %s-endian)",
                  local_id, MESSAGE_NAMES.get(mesg_num, mesg_num), len(fields),
                  len(developer_fields), layout.data_size, byte_order)

    def _read_field_definition(self, mesg_num: int) -> FieldDefinition:
        number, size, base_type_byte = self.reader.read_bytes(3)
        base_type = BASE_TYPES.get(base_type_byte & BASE_TYPE_NUMBER_MASK)
        if base_type is None or size % base_type.size:
            # Treated as an opaque byte run, as the FIT SDK does.
            log.debug("message %d field %d: base type 0x%02X with size %d read as bytes",
                      mesg_num, number, base_type_byte, size)
            base_type = BASE_TYPE_BYTE
        return FieldDefinition(number, size, base_type)

    def _read_data(self, local_id: int, time_offset: int | None = None) -> RawRecord | None:
        layout = self.layouts.get(local_id)
        if layout is None:
            raise UnknownDefinitionError(
                f"data record at offset {self.reader.position() - 1} references "
                f"local definition {local_id}, which has not been defined"
            )

        values: dict[int, Any] = {}
        for fd in layout.fields:
            value = decode_field(self.reader.read_bytes(fd.size), fd.base_type,
                                 layout.byte_order)
            if value is not None:
                values[fd.number] = apply_scale(layout.mesg_num, fd.number, value)

        developer_values = {}
        for fd in layout.developer_fields:
            value = decode_field(self.reader.read_bytes(fd.size), fd.base_type)
            if value is not None:
                developer_values[(fd.developer_index, fd.number)] = value

        timestamp = values.get(FIELD_TIMESTAMP)
        if isinstance(timestamp, int):
            self.last_timestamp = timestamp
        elif time_offset is not None:
            if self.last_timestamp is None:
                log.debug("compressed timestamp before any full timestamp; using 0")
            self.last_timestamp = expand_compressed_timestamp(
                self.last_timestamp or 0, time_offset)
            values[FIELD_TIMESTAMP] = self.last_timestamp

        self.record_counts[layout.mesg_num] = self.record_counts.get(layout.mesg_num, 0) + 1
        if self.mesg_nums is not None and layout.mesg_num not in self.mesg_nums:
            return None
        return RawRecord(layout.mesg_num, values, developer_values)


def iter_fit_segments(
    reader: ByteReader,
    check_crc: bool = True,
    mesg_nums: Iterable[int] | None = None,
) -> Iterator[FitDecoder]:
    """Yield a fresh decoder for each chained FIT segment in ``reader``.

    The caller must drain each decoder's ``records()`` before asking for the
    next one. Chaining stops at the end of the source, or after the first
    segment when the source length is unknown.
    """
    while True:
        decoder = FitDecoder(reader, check_crc, mesg_nums)
        yield decoder
        if decoder.state is not DecoderState.DONE:
            raise RuntimeError("previous FIT segment was not fully decoded")
        if not reader.remaining():
            return
        log.debug("chained FIT segment at offset %d", reader.position())


def read_fit_records(
    path: str | Path,
    check_crc: bool = True,
    mesg_nums: Iterable[int] | None = None,
) -> Iterator[RawRecord]:
    """Lazily decode every record of every segment in the FIT file at ``path``."""
    path = Path(path)
    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        log.info("Decoding %s (%s bytes)", path, f"{size:,}")
        reader = ByteReader(f, size)
        for decoder in iter_fit_segments(reader, check_crc, mesg_nums):
            yield from decoder.records()


# ─────────────────────────────────────────────────────────────────────────────
# Ride event extractor
# ─────────────────────────────────────────────────────────────────────────────

def _number(value: Any) -> Any:
    """Pass numeric scalars through; arrays, strings and bytes are not ride values."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


def _first_present(fields: dict[int, Any], *numbers: int) -> Any:
    for number in numbers:
        value = _number(fields.get(number))
        if value is not None:
            return value
    return None


def extract_ride_sample(record: RawRecord, default_timestamp: int = 0) -> RideSample:
    """Project a record message onto a RideSample.

    Enhanced speed/altitude win over their 16-bit counterparts. A record
    without a timestamp takes ``default_timestamp``.
    """
    fields = record.fields
    timestamp = _number(fields.get(FIELD_TIMESTAMP))
    return RideSample(
        timestamp=int(timestamp) if timestamp is not None else default_timestamp,
        power=_number(fields.get(FIELD_POWER)),
        cadence=_number(fields.get(FIELD_CADENCE)),
        heart_rate=_number(fields.get(FIELD_HEART_RATE)),
        speed=_first_present(fields, FIELD_ENHANCED_SPEED, FIELD_SPEED),
        distance=_number(fields.get(FIELD_DISTANCE)),
        altitude=_first_present(fields, FIELD_ENHANCED_ALTITUDE, FIELD_ALTITUDE),
        grade=_number(fields.get(FIELD_GRADE)),
    )


def iter_ride_samples(records: Iterable[RawRecord]) -> Iterator[RideSample]:
    """Yield one RideSample per record message, skipping every other message.

    An untimed record takes the previous sample's timestamp. Untimed records
    before the first timestamp are held back and take that first timestamp,
    or 0 when the stream has none at all.
    """
    previous: int | None = None
    untimed: list[RawRecord] = []
    for record in records:
        if record.mesg_num != MESG_RECORD:
            continue
        if previous is None and _number(record.fields.get(FIELD_TIMESTAMP)) is None:
            untimed.append(record)
            continue
        sample = extract_ride_sample(record, previous or 0)
        if previous is None:
            for held in untimed:
                yield extract_ride_sample(held, sample.timestamp)
            untimed.clear()
        previous = sample.timestamp
        yield sample
    for held in untimed:
        yield extract_ride_sample(held)


def read_ride_samples(path: str | Path, check_crc: bool = True) -> Iterator[RideSample]:
    """Lazily decode the ride samples of one FIT file. Nothing is read until iterated."""
    return iter_ride_samples(read_fit_records(path, check_crc, mesg_nums={MESG_RECORD}))


# ─────────────────────────────────────────────────────────────────────────────
# Broadcast writer
# ─────────────────────────────────────────────────────────────────────────────

def _rounded(value: float | None, digits: int | None = None) -> float | int | None:
    if value is None:
        return None
    if digits is None:
        return int(round(value))
    return round(value, digits)


def build_snapshot(sample: RideSample, ride_time: float = 0.0) -> list[dict[str, Any]]:
    """Build the focus document the overlay bridge expects for ``sample``.

    The bridge reads a one-element array. Rider identity, aggregates and
    event progress are not part of a recording and are sent as placeholders.
    """
    focus = {
        "name": "--",
        "country": "--",
        "team": "--",
        "teamCode": "--",
        "power": _rounded(sample.power),
        "avgPower": 0,
        "nrmPower": 0,
        "maxPower": 0,
        "cadence": _rounded(sample.cadence),
        "avgCadence": 0,
        "maxCadence": 0,
        "heartrate": _rounded(sample.heart_rate),
        "avgHeartrate": 0,
        "maxHeartrate": 0,
        "time": int(ride_time),
        "distance": _rounded(sample.distance, 2),
        "height": _rounded(sample.altitude, 1),
        "speed": _rounded(sample.speed, 3),
        "tss": 0,
        "calories": 0,
        "draft": 0,
        "windSpeed": 0,
        "windAngle": 0,
        "slope": _rounded(sample.grade, 1),
        "eventLapsTotal": 0,
        "eventLapsDone": 0,
        "eventDistanceTotal": 0,
        "eventDistanceDone": 0,
        "eventDistanceToNextLocation": 0,
        "eventNextLocation": 0,
        "eventPosition": 0,
        "version": SNAPSHOT_VERSION,
    }
    return [focus]


def _publish_mode(target_path: Path) -> int:
    """Permission bits for a new snapshot: the target's own, else 0o666 minus umask."""
    try:
        return stat.S_IMODE(os.stat(target_path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_atomic(target_path: str | Path, text: str) -> None:
    """Replace ``target_path`` with ``text`` so readers see old or new, never partial.

    The document goes to a temporary file in the same directory, is fsync'd,
    then renamed over the target. mkstemp creates the file owner-only, so it
    is given the target's permissions first. Raises PublishError on any OS
    failure.
    """
    target_path = Path(target_path)
    tmp_path = None
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{target_path.name}.", suffix=".tmp",
                                   dir=target_path.parent)
        tmp_path = Path(tmp)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, _publish_mode(target_path))
        os.replace(tmp_path, target_path)
    except OSError as exc:
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
        raise PublishError(f"could not publish {target_path}: {exc}") from exc


def publish(sample: RideSample, target_path: str | Path, ride_time: float = 0.0) -> None:
    """Serialize ``sample`` and atomically replace ``target_path`` with it."""
    write_atomic(target_path, json.dumps(build_snapshot(sample, ride_time)))


class BroadcastWriter:
    """Sole writer of the broadcast snapshot at ``target_path``."""

    def __init__(self, target_path: str | Path):
        self.target_path = Path(target_path)

    def publish(self, sample: RideSample, ride_time: float = 0.0) -> None:
        publish(sample, self.target_path, ride_time)
        log.debug("published t=%d power=%s -> %s",
                  sample.timestamp, sample.power, self.target_path)


# ─────────────────────────────────────────────────────────────────────────────
# Playback scheduler
# ─────────────────────────────────────────────────────────────────────────────

class ReplayScheduler:
    """Paces ride samples against the wall clock and hands them to a writer.

    Sources are played in order as one virtual ride. Each sample is emitted
    ``timestamp - previous.timestamp`` seconds after the previous one; the
    first sample of every source emits immediately after the previous
    source's last. Pacing uses a deadline on ``clock`` so per-sample overhead
    does not accumulate.

    ``wait(seconds)`` must return True when playback should stop; it defaults
    to waiting on ``stop_event``, so ``stop()`` from a signal handler or
    another thread ends the run before the next emission.
    """

    def __init__(
        self,
        writer: BroadcastWriter,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float], bool] | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.writer = writer
        self.clock = clock
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self._wait = wait if wait is not None else self.stop_event.wait

    def stop(self) -> None:
        self.stop_event.set()

    def run(self, sources: Iterable[Iterable[RideSample]]) -> PlaybackState:
        sources = list(sources)
        state = PlaybackState(output_path=self.writer.target_path)
        start = self.clock()

        for index, samples in enumerate(sources):
            state.file_index = index
            try:
                count = self._play_source(samples, state, start)
            finally:
                close = getattr(samples, "close", None)
                if close is not None:
                    close()
            if state.cancelled:
                log.info("Playback stopped after %d samples", state.emitted)
                return state
            if count == 0:
                log.info("File %d/%d has no ride samples; skipped", index + 1, len(sources))
            else:
                log.info("File %d/%d finished: %d samples", index + 1, len(sources), count)

        log.info("Playback finished: %d samples from %d file(s), %.0f s of ride",
                 state.emitted, len(sources), state.elapsed)
        return state

    def _play_source(self, samples: Iterable[RideSample], state: PlaybackState,
                     start: float) -> int:
        previous = None
        count = 0
        for sample in samples:
            delta = 0.0
            if previous is not None:
                delta = sample.timestamp - previous.timestamp
                if delta < 0:
                    log.warning("Timestamp went backwards by %d s at t=%d; not waiting",
                                -delta, sample.timestamp)
                    delta = 0.0
            previous = sample
            state.elapsed += delta

            if not self._pace(start + state.elapsed):
                state.cancelled = True
                return count
            self.writer.publish(sample, ride_time=state.elapsed)
            state.last_sample = sample
            state.emitted += 1
            count += 1
        return count

    def _pace(self, deadline: float) -> bool:
        """Wait until ``deadline``. Returns False if playback should stop instead."""
        if self.stop_event.is_set():
            return False
        remaining = deadline - self.clock()
        if remaining > 0 and self._wait(remaining):
            return False
        return not self.stop_event.is_set()


def replay(paths: Iterable[str | Path], output_path: str | Path,
           check_crc: bool = True) -> PlaybackState:
    """Play ``paths`` in order to ``output_path``; SIGINT/SIGTERM stop cleanly."""
    scheduler = ReplayScheduler(BroadcastWriter(output_path))
    sources = [read_ride_samples(p, check_crc) for p in paths]

    previous_handlers = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(
                signum, lambda *_: scheduler.stop())
    try:
        return scheduler.run(sources)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)


# ─────────────────────────────────────────────────────────────────────────────
# Exporters
# ─────────────────────────────────────────────────────────────────────────────

def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, tuple):
        return [_jsonable(v) for v in value]
    return value


def record_to_dict(record: RawRecord, drop_unknown: bool = False) -> dict[str, Any]:
    """Name a record's fields from the profile for JSON output.

    With ``drop_unknown``, fields missing from the profile and developer
    fields are left out.
    """
    fields = {}
    for number, value in record.fields.items():
        if drop_unknown and field_profile(record.mesg_num, number) is None:
            continue
        fields[field_name(record.mesg_num, number)] = _jsonable(value)
    if not drop_unknown:
        for (index, number), value in record.developer_fields.items():
            fields[f"developer_{index}_{number}"] = _jsonable(value)
    return {"kind": record.name, "fields": fields}


def export_json(paths: Iterable[str | Path], output_path: str | Path,
                check_crc: bool = True, drop_unknown: bool = False) -> int:
    """Dump every decoded record of ``paths`` as one JSON array.

    ``output_path`` of "-" writes to stdout. With ``drop_unknown``, messages
    and fields missing from the profile are skipped. Returns the number of
    records written.
    """
    records = [record_to_dict(record, drop_unknown)
               for path in paths
               for record in read_fit_records(path, check_crc)
               if not drop_unknown or record.mesg_num in MESSAGE_NAMES]
    text = json.dumps(records, indent=2)
    if str(output_path) == "-":
        print(text)
    else:
        write_atomic(output_path, text + "\n")
        print(f"  JSON: {output_path} ({len(records):,} records)")
    return len(records)


# ─────────────────────────────────────────────────────────────────────────────
# File summary
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class FitFileSummary:
    """Everything ``--info`` reports about one FIT file."""
    file_path: str = ""
    file_size: int = 0
    headers: list[FitHeader] = field(default_factory=list)
    record_counts: dict[int, int] = field(default_factory=dict)
    samples: list[RideSample] = field(default_factory=list)

    @property
    def duration_seconds(self) -> int:
        if len(self.samples) < 2:
            return 0
        return self.samples[-1].timestamp - self.samples[0].timestamp

    @property
    def max_power(self) -> int | None:
        powers = [s.power for s in self.samples if s.power is not None]
        return max(powers) if powers else None

    @property
    def avg_power(self) -> float | None:
        powers = [s.power for s in self.samples if s.power is not None]
        return sum(powers) / len(powers) if powers else None

    @property
    def max_heart_rate(self) -> int | None:
        rates = [s.heart_rate for s in self.samples if s.heart_rate is not None]
        return max(rates) if rates else None

    @property
    def max_speed_kmh(self) -> float:
        speeds = [s.speed for s in self.samples if s.speed is not None]
        return max(speeds) * 3.6 if speeds else 0.0

    @property
    def total_distance_km(self) -> float:
        distances = [s.distance for s in self.samples if s.distance is not None]
        return distances[-1] / 1000.0 if distances else 0.0


def summarize_file(path: str | Path, check_crc: bool = True) -> FitFileSummary:
    """Decode a whole FIT file and collect the figures shown by ``--info``."""
    path = Path(path)
    summary = FitFileSummary(file_path=str(path))
    with open(path, "rb") as f:
        summary.file_size = os.fstat(f.fileno()).st_size
        reader = ByteReader(f, summary.file_size)
        for decoder in iter_fit_segments(reader, check_crc):
            summary.samples.extend(iter_ride_samples(decoder.records()))
            summary.headers.append(decoder.header)
            for mesg_num, count in decoder.record_counts.items():
                summary.record_counts[mesg_num] = summary.record_counts.get(mesg_num, 0) + count
    return summary


def print_file_info(summary: FitFileSummary) -> None:
    """Print a human-readable summary of a decoded FIT file."""
    print(f"\n{'═' * 60}")
    print(f"  FIT File: {Path(summary.file_path).name}")
    print(f"{'═' * 60}")
    print(f"  File size:      {summary.file_size:,} bytes")
    for i, header in enumerate(summary.headers):
        print(f"  Segment {i + 1}:      protocol {header.protocol}, profile "
              f"{header.profile}, {header.data_size:,} data bytes")

    print("\n  Record counts:")
    for mesg_num, count in sorted(summary.record_counts.items()):
        name = MESSAGE_NAMES.get(mesg_num, f"UNKNOWN({mesg_num})")
        print(f"    {name:18s} (mesg {mesg_num:5d}): {count:,}")

    if summary.samples:
        first = summary.samples[0].utc
        print("\n  Ride data:")
        print(f"    Samples:      {len(summary.samples):,}")
        print(f"    Start:        {first.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        print(f"    Duration:     {summary.duration_seconds}s ({summary.duration_seconds / 60:.1f} min)")
        print(f"    Distance:     {summary.total_distance_km:.2f} km")
        print(f"    Max speed:    {summary.max_speed_kmh:.1f} km/h")
        if summary.max_power is not None:
            print(f"    Power:        avg {summary.avg_power:.0f} W, max {summary.max_power} W")
        else:
            print("    Power:        not recorded")
        if summary.max_heart_rate is not None:
            print(f"    Max HR:       {summary.max_heart_rate} bpm")

    print(f"{'═' * 60}\n")


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="FIT Ride Replayer: play recorded .fit rides back in real "
                    "time as a JSON focus snapshot for broadcast overlays.",
        epilog="Example: python3 fit_replayer.py ride.fit -o focus.json",
    )
    parser.add_argument(
        "files",
        nargs="*",
        metavar="FILE",
        help="FIT files, played in order as one continuous ride",
    )
    parser.add_argument(
        "-o", "--output",
        metavar="PATH",
        default=os.environ.get(OUTPUT_ENV, DEFAULT_OUTPUT),
        help=f"Snapshot path (default: ${OUTPUT_ENV} or {DEFAULT_OUTPUT}); "
             f"with --dump, '-' writes to stdout",
    )
    parser.add_argument(
        "--no-crc-check",
        action="store_true",
        help="Skip header and file checksum validation",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--info",
        action="store_true",
        help="Print a summary of each file instead of replaying",
    )
    mode.add_argument(
        "--dump",
        action="store_true",
        help="Write all decoded records as JSON to the output path instead of replaying",
    )
    parser.add_argument(
        "--drop-unknown",
        action="store_true",
        help="With --dump, leave out messages and fields missing from the profile",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Warnings only")

    args = parser.parse_args()

    if not args.files:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.verbose, args.quiet)

    paths = [Path(p) for p in args.files]
    for path in paths:
        if not path.is_file():
            print(f"Error: File not found: {path}", file=sys.stderr)
            sys.exit(1)

    check_crc = not args.no_crc_check
    try:
        if args.info:
            for path in paths:
                print_file_info(summarize_file(path, check_crc))
            return
        if args.dump:
            export_json(paths, args.output, check_crc, args.drop_unknown)
            return
        state = replay(paths, args.output, check_crc)
    except (FitDecodeError, PublishError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if state.cancelled:
        sys.exit(130)


if __name__ == "__main__":
    main()
