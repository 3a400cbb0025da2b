from __future__ import annotations

import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional

import serial  # type: ignore[import]
import typer

from .config import SensorConfig
from .frames import FrameParser, iterate_binary_stream
from .processing import (
    MeasurementPipeline,
    MeasurementRecord,
    PassThrough,
    RunningAverage,
    format_record,
)

logger = logging.getLogger(__name__)


class PmsReadError(RuntimeError):
    """Fatal condition that ends a reading session."""


class DeviceError(PmsReadError):
    """The byte source could not be opened, configured or read."""


class EmptyWindowError(PmsReadError):
    """The averaging deadline fired before any valid frame arrived."""


@dataclass
class SerialSettings:
    port: str
    baudrate: int = 9600
    timeout: float = 0.1


class SerialByteSource:
    """
    Raw 8N1 serial port without flow control.

    Reads use a short timeout so a pending stop request is noticed between
    reads; an empty read is a timeout, never end of stream.
    """

    def __init__(self, settings: SerialSettings):
        self.settings = settings
        self._handle = None

    def open(self) -> None:
        try:
            self._handle = serial.Serial(
                port=self.settings.port,
                baudrate=self.settings.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                timeout=self.settings.timeout,
            )
        except (serial.SerialException, OSError) as exc:
            raise DeviceError(f"open(): {self.settings.port}: {exc}") from exc
        logger.info("Opened %s at %d baud", self.settings.port, self.settings.baudrate)

    def iter_chunks(self, chunk_size: int, stop: threading.Event) -> Iterator[bytes]:
        if self._handle is None:
            raise DeviceError(f"{self.settings.port} is not open")
        while not stop.is_set():
            try:
                data = self._handle.read(chunk_size)
            except (serial.SerialException, OSError) as exc:
                raise DeviceError(f"read(): {self.settings.port}: {exc}") from exc
            if not data:
                continue
            yield data

    def close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            finally:
                self._handle = None


def _until_stopped(chunks: Iterable[bytes], stop: threading.Event) -> Iterator[bytes]:
    for chunk in chunks:
        yield chunk
        if stop.is_set():
            break


def echo_record(record: MeasurementRecord) -> None:
    typer.echo(format_record(record))


class SensorHost:
    """
    Reads frames from one sensor until the byte source fails or, when
    averaging, until the window deadline fires.
    """

    def __init__(
        self,
        settings: SerialSettings,
        config: SensorConfig,
        sink: Callable[[MeasurementRecord], None] = echo_record,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.config = config
        self.variant = config.variant_enum
        self.parser = FrameParser(self.variant)
        self._sink = sink
        self._clock = clock
        self._stop = threading.Event()
        self._window_result = None
        self._timer: Optional[threading.Timer] = None

    @property
    def averaging(self) -> bool:
        return bool(self.config.average_sec)

    def run(self) -> None:
        source: Optional[SerialByteSource] = None
        chunk_size = self.config.serial.chunk_size
        if self.settings.port == "-":
            chunks = _until_stopped(iterate_binary_stream(sys.stdin.buffer, chunk_size), self._stop)
        else:
            source = SerialByteSource(self.settings)
            source.open()
            chunks = source.iter_chunks(chunk_size, self._stop)

        start_time = self._clock()
        pipeline = MeasurementPipeline(self.variant, self._clock, start_time)
        pipeline.register_callback(self._sink)
        aggregator: PassThrough | RunningAverage
        if self.averaging:
            aggregator = RunningAverage()
            self._arm_deadline(aggregator)
        else:
            aggregator = PassThrough()

        interval_sec = max(float(self.config.stats_log_interval), 5.0)
        next_log = time.monotonic() + interval_sec
        try:
            for measurement in self.parser.parse_binary(chunks):
                ready = aggregator.add(measurement)
                if ready is not None:
                    pipeline.emit(*ready)
                if time.monotonic() >= next_log:
                    self._log_stats(pipeline)
                    if isinstance(aggregator, RunningAverage):
                        logger.info("Averaging window holds %d frames", aggregator.count)
                    next_log = time.monotonic() + interval_sec
                if self._stop.is_set():
                    break
            if not self._stop.is_set():
                raise DeviceError(f"read(): {self.settings.port}: end of stream")
            self._finish_window(pipeline)
        finally:
            if self._timer is not None:
                self._timer.cancel()
            if source is not None:
                source.close()
            self._log_stats(pipeline, final=True)

    def _arm_deadline(self, aggregator: RunningAverage) -> None:
        window = float(self.config.average_sec or 0.0)

        def on_deadline() -> None:
            self._window_result = aggregator.close()
            self._stop.set()

        self._timer = threading.Timer(window, on_deadline)
        self._timer.daemon = True
        self._timer.start()
        logger.info("Averaging over %.1fs", window)

    def _finish_window(self, pipeline: MeasurementPipeline) -> None:
        if not self.averaging:
            return
        result = self._window_result
        if result is None:
            raise EmptyWindowError("no data frames collected in the given time span.")
        count, mean = result
        pipeline.emit(count, mean)

    def _log_stats(self, pipeline: MeasurementPipeline, final: bool = False) -> None:
        stats = self.parser.stats()
        logger.info(
            "%semitted=%d frames=%d length_errors=%d checksum_errors=%d skipped_bytes=%d",
            "Final stats: " if final else "",
            pipeline.emitted,
            stats["frames"],
            stats["length_errors"],
            stats["checksum_errors"],
            stats["skipped_bytes"],
        )
