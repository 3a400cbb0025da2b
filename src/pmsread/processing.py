from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from .frames import CHANNEL_COUNT, Measurement, SensorVariant


@dataclass
class MeasurementRecord:
    """Emitted record: one frame or the mean of an averaging window."""

    timestamp: float
    num_measurements: int
    measurement: Measurement
    variant: SensorVariant


def format_record(record: MeasurementRecord) -> str:
    fields = [
        f'"timestamp":{record.timestamp:.1f}',
        f'"num_measurements":{record.num_measurements}',
    ]
    fields.extend(
        f'"{name}":{value:.2f}'
        for name, value in zip(record.variant.channel_names, record.measurement.values)
    )
    return "{" + ",".join(fields) + "}"


class PassThrough:
    """Forwards every accepted frame as its own record."""

    def add(self, measurement: Measurement) -> Optional[tuple[int, Measurement]]:
        return 1, measurement


class RunningAverage:
    """
    Running sum and frame counter for one averaging window.

    `add` runs on the reader loop and `close` on the deadline timer; both take
    the lock, so the snapshot in `close` never observes a half-applied frame.
    Once closed, the window refuses further frames.
    """

    def __init__(self) -> None:
        self._sum = np.zeros(CHANNEL_COUNT, dtype=float)
        self._count = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    def add(self, measurement: Measurement) -> Optional[tuple[int, Measurement]]:
        with self._lock:
            if self._closed:
                return None
            self._sum += np.asarray(measurement.values, dtype=float)
            self._count += 1
        return None

    def close(self) -> Optional[tuple[int, Measurement]]:
        """Close the window and return (count, mean), or None when it is empty."""
        with self._lock:
            self._closed = True
            count = self._count
            if count == 0:
                return None
            mean = self._sum / count
        return count, Measurement(tuple(float(value) for value in mean))


class MeasurementPipeline:
    """
    Glue that stamps aggregated measurements and hands them to the sinks.
    """

    def __init__(self, variant: SensorVariant, clock: Callable[[], float], start_time: float):
        self.variant = variant
        self._clock = clock
        self._start_time = start_time
        self._callbacks: List[Callable[[MeasurementRecord], None]] = []
        self.emitted = 0

    def elapsed(self) -> float:
        return self._clock() - self._start_time

    def emit(self, num_measurements: int, measurement: Measurement) -> MeasurementRecord:
        record = MeasurementRecord(
            timestamp=self.elapsed(),
            num_measurements=num_measurements,
            measurement=measurement,
            variant=self.variant,
        )
        for callback in self._callbacks:
            callback(record)
        self.emitted += 1
        return record

    def register_callback(self, callback: Callable[[MeasurementRecord], None]) -> None:
        self._callbacks.append(callback)
