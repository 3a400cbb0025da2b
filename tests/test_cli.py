from __future__ import annotations

import json
import time

from typer.testing import CliRunner

from pmsread.cli import app

runner = CliRunner()

VALUES = (4, 6, 7, 4, 6, 7, 780, 230, 40, 3, 1, 0)


def build_frame(values=VALUES) -> bytes:
    words = [28, *values, 0]
    body = b"".join(int(word).to_bytes(2, "big") for word in words)
    checksum = (0x42 + 0x4D + sum(body)) % 65536
    return b"\x42\x4D" + body + checksum.to_bytes(2, "big")


class FakeSerialInstance:
    def __init__(self, data: bytes):
        self._data = bytearray(data)

    def read(self, size: int) -> bytes:
        if not self._data:
            time.sleep(0.005)
            return b""
        chunk = bytes(self._data[:size])
        del self._data[:size]
        return chunk

    def close(self) -> None:
        pass


class FakeSerialModule:
    EIGHTBITS = 8
    PARITY_NONE = "N"
    STOPBITS_ONE = 1
    SerialException = OSError

    def __init__(self, data: bytes = b"", fail_open: bool = False):
        self._data = data
        self._fail_open = fail_open

    def Serial(self, **kwargs):
        if self._fail_open:
            raise OSError(13, "Permission denied")
        return FakeSerialInstance(self._data)


def test_usage_error_without_device():
    result = runner.invoke(app, [])
    assert result.exit_code == 2
    assert "Usage" in result.stderr
    assert result.stdout == ""


def test_usage_error_with_extra_arguments():
    result = runner.invoke(app, ["/dev/ttyUSB0", "10", "extra"])
    assert result.exit_code == 2
    assert "extra" in result.stderr
    assert result.stdout == ""


def test_non_integer_window_rejected():
    result = runner.invoke(app, ["/dev/ttyUSB0", "soon"])
    assert result.exit_code == 2


def test_open_failure_exits_nonzero(monkeypatch):
    monkeypatch.setattr("pmsread.runner.serial", FakeSerialModule(fail_open=True))
    result = runner.invoke(app, ["/dev/ttyUSB9"])
    assert result.exit_code == 1
    assert "fatal: open(): /dev/ttyUSB9" in result.output
    assert "Permission denied" in result.output


def test_averaged_record_exits_zero(monkeypatch):
    second = tuple(value + 2 for value in VALUES)
    monkeypatch.setattr("pmsread.runner.serial", FakeSerialModule(build_frame() + build_frame(second)))
    result = runner.invoke(app, ["/dev/ttyUSB0", "1"])
    assert result.exit_code == 0
    lines = [line for line in result.stdout.splitlines() if line.startswith("{")]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["num_measurements"] == 2
    assert record["std_pm1"] == 5.0
    assert record["count_0_3um"] == 781.0
    assert '"count_10um":1.00}' in lines[0]


def test_empty_window_exits_nonzero(monkeypatch):
    monkeypatch.setattr("pmsread.runner.serial", FakeSerialModule(b"\x00" * 64))
    result = runner.invoke(app, ["/dev/ttyUSB0", "1"])
    assert result.exit_code == 1
    assert "no data frames collected" in result.output
    assert "timestamp" not in result.output


def test_stdin_pass_through_t_variant():
    stream = b"\x00" + build_frame(VALUES[:10] + (250, 500))
    result = runner.invoke(app, ["--variant", "t", "-"], input=stream)
    # The recorded stream ends, which is fatal like a failing device.
    assert result.exit_code == 1
    lines = [line for line in result.output.splitlines() if line.startswith("{")]
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["num_measurements"] == 1
    assert record["temperature"] == 25.0
    assert record["humidity"] == 50.0
    assert "end of stream" in result.output


def test_bad_config_override_is_usage_error():
    result = runner.invoke(app, ["--set", "variant=pms7003", "/dev/ttyUSB0"])
    assert result.exit_code == 2


class InterruptedSerialInstance(FakeSerialInstance):
    def read(self, size: int) -> bytes:
        raise KeyboardInterrupt


def test_ctrl_c_during_window_exits_nonzero(monkeypatch):
    fake_serial = FakeSerialModule()
    fake_serial.Serial = lambda **kwargs: InterruptedSerialInstance(b"")
    monkeypatch.setattr("pmsread.runner.serial", fake_serial)
    result = runner.invoke(app, ["/dev/ttyUSB0", "5"])
    assert result.exit_code == 130
    assert result.stdout == ""


def test_null_or_scalar_serial_override_is_usage_error():
    for override in ("serial.timeout=null", "serial=5"):
        result = runner.invoke(app, ["--set", override, "/dev/ttyUSB0"])
        assert result.exit_code == 2, override
        assert "serial" in result.stderr
