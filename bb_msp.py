#!/usr/bin/env python3
"""
MSP v2 and CLI communication with a Betaflight-family flight controller.

Provides the serial link and the concrete write-back collaborators used by
bb_apply.ApplyOrchestrator:

  FCLink            serial port, MSP requests, CLI session, expected-disconnect flag
  CliLineChannel    "set key = value" / "save" lines over the CLI
  MspParamChannel   PID and feedforward groups over MSP (CLI lines while in CLI)
  DiffSnapshotStore "diff all" dumps saved to a directory

MSP v2 frame format:
  $X<  flag(u8)  cmd(u16 LE)  size(u16 LE)  payload  crc8
  $X>  flag(u8)  cmd(u16 LE)  size(u16 LE)  payload  crc8

Usage:
    from bb_msp import FCLink

    with FCLink("/dev/ttyACM0") as fc:
        print(fc.get_info()["firmware"])
"""

import logging
import os
import re
import struct
import time
from datetime import datetime

import serial

from bb_common import AXIS_NAMES, ChannelError, ConnectionLostError

log = logging.getLogger("bbtune.msp")

# ─── MSP Command IDs ─────────────────────────────────────────────────────────

MSP_FC_VARIANT          = 2
MSP_FC_VERSION          = 3
MSP_BOARD_INFO          = 4
MSP_NAME                = 10
MSP_PID_ADVANCED        = 94
MSP_SET_PID_ADVANCED    = 95
MSP_PID                 = 112
MSP_SET_PID             = 202

PID_BYTES_PER_AXIS = 3
PID_ADVANCED_F_OFFSET = 32   # u16 feedforward gains, roll/pitch/yaw

CLI_ERROR_MARKERS = ("Invalid", "ERROR", "Unknown command")

# ─── MSP v2 CRC-8 DVB-S2 ─────────────────────────────────────────────────────

def _crc8_table(poly=0xD5):
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = ((crc << 1) ^ poly) & 0xFF if crc & 0x80 else (crc << 1) & 0xFF
        table.append(crc)
    return bytes(table)

_CRC8 = _crc8_table()


def crc8_dvb_s2(data):
    crc = 0
    for b in data:
        crc = _CRC8[crc ^ b]
    return crc


# ─── MSP v2 Frames ───────────────────────────────────────────────────────────

def msp_v2_encode(cmd, payload=b""):
    """Encode a request frame (to the FC)."""
    body = struct.pack("<BHH", 0, cmd, len(payload)) + payload
    return b"$X<" + body + bytes([crc8_dvb_s2(body)])


def msp_v2_decode(raw):
    """Decode the first response frame in *raw*.

    Returns (cmd, payload), or None for short, error ("!") or bad-CRC frames.
    """
    idx = raw.find(b"$X")
    if idx < 0:
        return None
    raw = raw[idx:]
    if len(raw) < 9 or raw[2:3] == b"!":
        return None
    cmd, size = struct.unpack_from("<HH", raw, 4)
    if len(raw) < 9 + size:
        return None
    if crc8_dvb_s2(raw[3:8 + size]) != raw[8 + size]:
        return None
    return cmd, raw[8:8 + size]


# ─── Flight Controller Link ──────────────────────────────────────────────────

class FCLink:
    """Serial link to one flight controller.

    Also the connection collaborator of the apply orchestrator: it is told
    when the next disconnect (the reboot after "save") is expected.
    """

    def __init__(self, port, baudrate=115200, timeout=2.0, serial_factory=None):
        self.port_path = port
        self.baudrate = baudrate
        self.timeout = timeout
        self._serial_factory = serial_factory or serial.Serial
        self._ser = None
        self._info = None
        self._rxbuf = b""
        self._in_cli = False
        self._disconnect_expected = False

    def open(self):
        try:
            self._ser = self._serial_factory(
                port=self.port_path,
                baudrate=self.baudrate,
                timeout=self.timeout,
                write_timeout=self.timeout,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
            )
        except (serial.SerialException, OSError) as e:
            raise ChannelError(f"cannot open {self.port_path}: {e}") from e
        time.sleep(0.1)
        self._ser.reset_input_buffer()
        self._ser.reset_output_buffer()
        self._rxbuf = b""
        self._in_cli = False
        log.info(f"Opened {self.port_path} @ {self.baudrate}")

    def close(self):
        if self._ser is not None and self._ser.is_open:
            try:
                self._ser.close()
            except (serial.SerialException, OSError) as e:
                log.debug(f"close {self.port_path}: {e}")
        self._ser = None
        self._in_cli = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.close()

    # ── Expected disconnect ───────────────────────────────────────────────

    def expect_disconnect(self):
        self._disconnect_expected = True
        log.info("Next disconnect is expected (reboot after save)")

    def clear_expected_disconnect(self):
        self._disconnect_expected = False

    @property
    def disconnect_expected(self):
        return self._disconnect_expected

    # ── Raw I/O ───────────────────────────────────────────────────────────

    def _io(self, fn, *args):
        if self._ser is None:
            raise ConnectionLostError(f"{self.port_path} is not open")
        try:
            return fn(*args)
        except (serial.SerialException, OSError) as e:
            self._in_cli = False
            raise ConnectionLostError(f"{self.port_path}: {e}") from e

    def _write(self, data):
        self._io(self._ser.write, data)

    def _read_waiting(self):
        waiting = self._io(lambda: self._ser.in_waiting)
        return self._io(self._ser.read, waiting) if waiting else b""

    # ── MSP ───────────────────────────────────────────────────────────────

    def _send(self, cmd, payload=b""):
        if self._in_cli:
            raise ChannelError("MSP is not served while the CLI is open")
        self._read_waiting()
        self._rxbuf = b""
        self._write(msp_v2_encode(cmd, payload))

    def _recv(self, expected_cmd=None, timeout=None):
        """Next matching response frame as (cmd, payload), or None on timeout.

        Bytes beyond the returned frame stay in the persistent buffer.
        """
        deadline = time.monotonic() + (self.timeout if timeout is None else timeout)
        while time.monotonic() < deadline:
            chunk = self._read_waiting()
            if chunk:
                self._rxbuf += chunk
            elif not self._rxbuf:
                time.sleep(0.0005)
                continue

            start = 0
            while True:
                idx = self._rxbuf.find(b"$X", start)
                if idx < 0:
                    self._rxbuf = self._rxbuf[-2:]  # may hold a partial "$X"
                    break
                if len(self._rxbuf) - idx < 9:
                    break
                if self._rxbuf[idx + 2:idx + 3] == b"!":
                    size = struct.unpack_from("<H", self._rxbuf, idx + 6)[0]
                    cmd = struct.unpack_from("<H", self._rxbuf, idx + 4)[0]
                    if cmd == expected_cmd:
                        self._rxbuf = self._rxbuf[idx + 9 + size:]
                        raise ChannelError(f"FC rejected MSP command {cmd}")
                    start = idx + 1
                    continue
                size = struct.unpack_from("<H", self._rxbuf, idx + 6)[0]
                frame_len = 9 + size
                if len(self._rxbuf) - idx < frame_len:
                    break
                result = msp_v2_decode(self._rxbuf[idx:idx + frame_len])
                if result is not None and (expected_cmd is None or result[0] == expected_cmd):
                    self._rxbuf = self._rxbuf[idx + frame_len:]
                    return result
                start = idx + 1
            if not chunk:
                time.sleep(0.0002)
        return None

    def request(self, cmd, payload=b"", timeout=None):
        """Send a request and wait for its reply. Returns the payload or None."""
        self._send(cmd, payload)
        result = self._recv(expected_cmd=cmd, timeout=timeout)
        return result[1] if result else None

    def get_info(self):
        """FC identification: variant, version, craft name, board."""
        if self._info:
            return self._info
        variant = self.request(MSP_FC_VARIANT)
        if not variant or len(variant) < 4:
            return None
        version = self.request(MSP_FC_VERSION)
        name = self.request(MSP_NAME) or b""
        board = self.request(MSP_BOARD_INFO) or b""
        version = tuple(version[:3]) if version and len(version) >= 3 else None
        version_str = ".".join(str(v) for v in version) if version else "?"
        self._info = {
            "fc_variant": variant[:4].decode("ascii", errors="ignore"),
            "version": version,
            "version_str": version_str,
            "craft_name": name.decode("ascii", errors="ignore").strip("\x00").strip(),
            "board": board[:4].decode("ascii", errors="ignore") if len(board) >= 4 else None,
        }
        self._info["firmware"] = f"{self._info['fc_variant']} {version_str}"
        return self._info

    # ── CLI ───────────────────────────────────────────────────────────────

    @property
    def in_cli(self):
        return self._in_cli

    def cli_enter(self):
        if self._in_cli:
            return
        self._read_waiting()
        self._write(b"#")
        time.sleep(0.3)
        self._read_waiting()  # banner
        self._in_cli = True
        log.debug("CLI entered")

    def cli_send(self, command, timeout=5.0):
        """Run one CLI command and return its output without echo and prompt.

        When a disconnect is expected and the FC answers with its reboot
        notice (or the port drops), ConnectionLostError is raised.
        """
        self.cli_enter()
        self._write((command + "\n").encode("ascii"))
        buf = b""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            chunk = self._read_waiting()
            if chunk:
                buf += chunk
                if buf.rstrip().endswith(b"#"):
                    break
                if self._disconnect_expected and b"Rebooting" in buf:
                    break
            else:
                time.sleep(0.01)

        text = buf.decode("ascii", errors="replace")
        if self._disconnect_expected and ("Rebooting" in text or not buf):
            self._in_cli = False
            raise ConnectionLostError("FC rebooted")

        lines = []
        for line in text.splitlines():
            line = line.rstrip()
            if line == command or line in ("#", "# ", ""):
                continue
            lines.append(line)
        return "\n".join(lines).strip()

    def cli_exit(self):
        """Back to MSP without saving. Unsaved CLI changes stay in RAM."""
        if not self._in_cli:
            return
        self._write(b"exit noreboot\n")
        time.sleep(0.1)
        self._read_waiting()
        self._rxbuf = b""
        self._in_cli = False
        log.debug("CLI left")

    def get_diff_all(self, timeout=10.0):
        return self.cli_send("diff all", timeout=timeout)


# ─── Write-back Collaborators ────────────────────────────────────────────────

class CliLineChannel:
    """Line-oriented command channel over the FC's CLI."""

    def __init__(self, link):
        self.link = link

    def send(self, line):
        reply = self.link.cli_send(line)
        for marker in CLI_ERROR_MARKERS:
            if marker in reply:
                raise ChannelError(f"'{line}' rejected: {reply.splitlines()[0] if reply else marker}")
        log.debug(f"cli> {line}")
        return reply


class MspParamChannel:
    """Structured parameter writes keyed by group.

    Groups: pid_roll / pid_pitch / pid_yaw with {"P", "I", "D"} values, and
    feedforward with {"roll", "pitch", "yaw"} F gains. Only the given keys
    change; the rest is read back from the FC first.
    """

    MODE_MSP = "msp"
    MODE_CLI = "cli"

    def __init__(self, link):
        self.link = link
        self.last_mode = None

    def write_group(self, group, values):
        if self.link.in_cli:
            self.last_mode = self.MODE_CLI
            log.info(f"{group}: CLI session open, writing as 'set' lines")
            return self._write_cli(group, values)
        self.last_mode = self.MODE_MSP
        if group.startswith("pid_"):
            return self._write_pid(group[4:], values)
        if group == "feedforward":
            return self._write_feedforward(values)
        raise ChannelError(f"unknown parameter group '{group}'")

    def read_pids(self):
        """Current PID and feedforward gains as {axis: {"P", "I", "D", "F"}}, or None."""
        payload = self.link.request(MSP_PID)
        if not payload or len(payload) < PID_BYTES_PER_AXIS * 3:
            return None
        pids = {}
        for a, axis in enumerate(AXIS_NAMES):
            p, i, d = payload[a * PID_BYTES_PER_AXIS:(a + 1) * PID_BYTES_PER_AXIS]
            pids[axis] = {"P": p, "I": i, "D": d, "F": 0}
        adv = self.link.request(MSP_PID_ADVANCED)
        if adv and len(adv) >= PID_ADVANCED_F_OFFSET + 6:
            for a, axis in enumerate(AXIS_NAMES):
                pids[axis]["F"] = struct.unpack_from("<H", adv, PID_ADVANCED_F_OFFSET + 2 * a)[0]
        return pids

    def _write_cli(self, group, values):
        if group.startswith("pid_"):
            axis = group[4:]
            lines = [f"set {term.lower()}_{axis} = {int(v)}" for term, v in sorted(values.items())]
        elif group == "feedforward":
            lines = [f"set f_{axis} = {int(v)}" for axis, v in sorted(values.items())]
        else:
            raise ChannelError(f"unknown parameter group '{group}'")
        for line in lines:
            reply = self.link.cli_send(line)
            if any(m in reply for m in CLI_ERROR_MARKERS):
                log.warning(f"{group}: '{line}' rejected: {reply}")
                return False
        return True

    def _write_pid(self, axis, values):
        if axis not in AXIS_NAMES:
            raise ChannelError(f"unknown PID axis '{axis}'")
        payload = self.link.request(MSP_PID)
        if not payload or len(payload) < PID_BYTES_PER_AXIS * 3:
            return False
        data = bytearray(payload)
        base = AXIS_NAMES.index(axis) * PID_BYTES_PER_AXIS
        for k, term in enumerate("PID"):
            if term in values:
                data[base + k] = max(0, min(255, int(values[term])))
        return self.link.request(MSP_SET_PID, bytes(data)) is not None

    def _write_feedforward(self, values):
        payload = self.link.request(MSP_PID_ADVANCED)
        if not payload or len(payload) < PID_ADVANCED_F_OFFSET + 6:
            return False
        data = bytearray(payload)
        for a, axis in enumerate(AXIS_NAMES):
            if axis in values:
                struct.pack_into("<H", data, PID_ADVANCED_F_OFFSET + 2 * a,
                                 max(0, min(65535, int(values[axis]))))
        return self.link.request(MSP_SET_PID_ADVANCED, bytes(data)) is not None


class DiffSnapshotStore:
    """Configuration snapshots as "diff all" text files.

    A CLI session opened only for the dump is closed again, so MSP writes
    that follow still go over MSP.
    """

    def __init__(self, link, directory="./snapshots"):
        self.link = link
        self.directory = directory

    def create(self, label="pre-apply"):
        was_in_cli = self.link.in_cli
        try:
            text = self.link.get_diff_all()
        finally:
            if not was_in_cli:
                self.link.cli_exit()
        if not text:
            raise ChannelError("empty 'diff all' reply, snapshot not created")
        slug = re.sub(r"[^A-Za-z0-9_-]+", "_", label).strip("_") or "snapshot"
        snapshot_id = f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{slug}"
        path = os.path.join(self.directory, snapshot_id + ".txt")
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(path, "w") as f:
                f.write(text + "\n")
        except OSError as e:
            raise ChannelError(f"cannot write snapshot {path}: {e}") from e
        log.info(f"Snapshot saved: {path}")
        return snapshot_id

    def load(self, snapshot_id):
        with open(os.path.join(self.directory, snapshot_id + ".txt")) as f:
            return f.read()
