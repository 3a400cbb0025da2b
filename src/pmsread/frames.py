from __future__ import annotations

import enum
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple


START_MARKER = (0x42, 0x4D)
PAYLOAD_SIZE = 30  # 15 big-endian words after the marker
FRAME_LENGTH = 2 * 13 + 2
CHANNEL_COUNT = 12

BASE_CHANNELS: Tuple[str, ...] = (
    "std_pm1",
    "std_pm2_5",
    "std_pm10",
    "atm_pm1",
    "atm_pm2_5",
    "atm_pm10",
    "count_0_3um",
    "count_0_5um",
    "count_1um",
    "count_2_5um",
)


class SensorVariant(str, enum.Enum):
    """Selects what channels 11 and 12 carry."""

    STANDARD = "standard"
    T = "t"

    @property
    def extra_channels(self) -> Tuple[str, str]:
        if self is SensorVariant.T:
            return ("temperature", "humidity")
        return ("count_5um", "count_10um")

    @property
    def extra_scale(self) -> float:
        return 10.0 if self is SensorVariant.T else 1.0

    @property
    def channel_names(self) -> Tuple[str, ...]:
        return BASE_CHANNELS + self.extra_channels


@dataclass(frozen=True)
class Measurement:
    values: Tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.values) != CHANNEL_COUNT:
            raise ValueError(f"Measurement needs {CHANNEL_COUNT} channels, got {len(self.values)}")

    def as_dict(self, variant: SensorVariant) -> Dict[str, float]:
        return dict(zip(variant.channel_names, self.values))


def frame_checksum(body: bytes) -> int:
    """Marker bytes plus every body byte, truncated to the 16-bit checksum field."""
    return (START_MARKER[0] + START_MARKER[1] + sum(body)) & 0xFFFF


class SyncState(enum.Enum):
    SEEK_FIRST = "seek_first"
    SEEK_SECOND = "seek_second"
    MATCHED = "matched"


class FrameSynchronizer:
    """
    Two-byte start marker detector fed one byte at a time.

    A byte that breaks the marker in SEEK_SECOND is dropped together with the
    first marker byte; it is never retried as a new first byte.
    """

    def __init__(self) -> None:
        self.state = SyncState.SEEK_FIRST

    def feed(self, byte: int) -> bool:
        if self.state is SyncState.SEEK_SECOND:
            if byte == START_MARKER[1]:
                self.state = SyncState.MATCHED
                return True
            self.state = SyncState.SEEK_FIRST
            return False
        self.state = SyncState.SEEK_SECOND if byte == START_MARKER[0] else SyncState.SEEK_FIRST
        return False


class FrameParser:
    """
    Streaming parser for PMS5003 frames.

    Chunks may split a frame anywhere; the synchronizer state and a partially
    read payload carry over between chunks. Rejected frames are counted and
    dropped, and scanning resumes at the byte after the rejected payload.
    """

    def __init__(self, variant: SensorVariant = SensorVariant.STANDARD):
        self.variant = variant
        self._sync = FrameSynchronizer()
        self._payload: Optional[bytearray] = None
        self._scanned = 0
        self._stats: Dict[str, int] = {
            "frames": 0,
            "length_errors": 0,
            "checksum_errors": 0,
            "skipped_bytes": 0,
        }
        self._log = logging.getLogger(__name__)

    def parse_binary(self, chunks: Iterable[bytes]) -> Iterator[Measurement]:
        for chunk in chunks:
            if not chunk:
                continue
            yield from self._consume(chunk)

    def _consume(self, chunk: bytes) -> Iterator[Measurement]:
        pos = 0
        size = len(chunk)
        while pos < size:
            if self._payload is not None:
                take = min(PAYLOAD_SIZE - len(self._payload), size - pos)
                self._payload.extend(chunk[pos : pos + take])
                pos += take
                if len(self._payload) < PAYLOAD_SIZE:
                    break
                payload = bytes(self._payload)
                self._payload = None
                measurement = self.decode(payload)
                if measurement is not None:
                    yield measurement
                continue
            byte = chunk[pos]
            pos += 1
            self._scanned += 1
            if self._sync.feed(byte):
                self._stats["skipped_bytes"] += self._scanned - len(START_MARKER)
                self._scanned = 0
                self._payload = bytearray()

    def decode(self, payload: bytes) -> Optional[Measurement]:
        """Validate the 30 bytes following a start marker and extract channels."""
        if len(payload) != PAYLOAD_SIZE:
            raise ValueError(f"Payload must be {PAYLOAD_SIZE} bytes, got {len(payload)}")
        words = struct.unpack(">15H", payload)
        if words[0] != FRAME_LENGTH:
            self._stats["length_errors"] += 1
            self._log.debug("Discarding frame with unexpected length field: %d", words[0])
            return None
        checksum_expected = words[14]
        checksum_actual = frame_checksum(payload[:-2])
        if checksum_actual != checksum_expected:
            self._stats["checksum_errors"] += 1
            self._log.debug(
                "Checksum mismatch (expected=%04X, actual=%04X)", checksum_expected, checksum_actual
            )
            return None
        values = [float(word) for word in words[1 : 1 + CHANNEL_COUNT]]
        scale = self.variant.extra_scale
        if scale != 1.0:
            values[10] /= scale
            values[11] /= scale
        self._stats["frames"] += 1
        return Measurement(tuple(values))

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)


def iterate_binary_stream(handle: Any, chunk_size: int = 32) -> Iterator[bytes]:
    while True:
        chunk = handle.read(chunk_size)
        if not chunk:
            break
        yield chunk
