#!/usr/bin/env python3
"""
Blackbox log decoder.

Decodes Betaflight-family .bbl/.bfl binary logs into per-axis time series.
A file may hold several logs (one per arm/disarm cycle), each starting with
its own block of "H key:value" header lines that describe, per frame type,
the field names, their encodings and their predictors.

Implements the variable-byte integers, ZigZag signed encoding, the grouped
tag encodings (TAG2_3S32, TAG8_4S16, TAG8_8SVB), I/P frame predictors,
slow (S), GPS (G) and GPS home (H) frames and event (E) frames. Corrupt
frames are counted and skipped; decoding never aborts on bad data.

Usage:
    from bb_decoder import decode_file

    sessions, corrupted, warnings = decode_file("LOG00012.BFL")
    for s in sessions:
        print(s.index, s.flight_data.sample_rate, s.flight_data.frame_count)
"""

import logging
import re
import struct

import numpy as np

from bb_common import merge_config, report

log = logging.getLogger("bbtune.decoder")

# ─── Constants ────────────────────────────────────────────────────────────────

SESSION_MARKER = b"H Product:"
HEADER_PREFIX = b"H "
END_OF_LOG_MESSAGE = b"End of log\x00"

INT32_MIN = -(2 ** 31)
UINT32_MAX = 2 ** 32 - 1

DECODER_LIMITS = {
    "max_frame_length": 256,          # bytes, longer frames are corrupt
    "max_iteration_jump": 5000,       # loop iterations between frames
    "max_time_jump_us": 10_000_000,
    "max_iteration_backward": 500,    # I-frame drift still treated as continuous
    "max_time_backward_us": 1_000_000,
    "progress_interval_bytes": 16384,
    "min_logging_rate_hz": 2000,      # below this motor noise falls past Nyquist
}

GYRO_SCALED_DEBUG_MODE = 6


class FrameCorruptError(ValueError):
    """A frame decoded to values that cannot be right."""


# ─── Data Model ───────────────────────────────────────────────────────────────

class TimeSeries:
    """One scalar channel: parallel arrays of time (s) and values."""

    def __init__(self, time, values):
        self.time = np.asarray(time, dtype=np.float64)
        self.values = np.asarray(values, dtype=np.float64)

    def __len__(self):
        return len(self.values)

    def __repr__(self):
        return f"<TimeSeries n={len(self.values)}>"


class FlightData:
    """Decoded, axis-aligned series for one session.

    gyro, pid_p/i/d/f: [roll, pitch, yaw]
    setpoint:          [roll, pitch, yaw, throttle]
    motor:             [m0, m1, m2, m3]
    slow / gps:        {field name: TimeSeries} aligned to the main time base
    """

    def __init__(self, gyro, setpoint, pid_p, pid_i, pid_d, pid_f, motor,
                 debug=None, slow=None, gps=None, sample_rate=1000.0,
                 duration=0.0, frame_count=0):
        self.gyro = gyro
        self.setpoint = setpoint
        self.pid_p = pid_p
        self.pid_i = pid_i
        self.pid_d = pid_d
        self.pid_f = pid_f
        self.motor = motor
        self.debug = debug or []
        self.slow = slow or {}
        self.gps = gps or {}
        self.sample_rate = sample_rate
        self.duration = duration
        self.frame_count = frame_count

    @property
    def throttle(self):
        return self.setpoint[3]

    def __repr__(self):
        return (f"<FlightData {self.frame_count} frames @ {self.sample_rate:.0f}Hz, "
                f"{self.duration:.1f}s>")


class LogHeader:
    """Static metadata of one log, parsed from its "H key:value" lines."""

    def __init__(self, raw):
        self.raw = dict(raw)
        self.product = raw.get("Product", "")
        self.data_version = _int(raw, "Data version", 0)
        self.firmware_type = raw.get("Firmware type", "")
        self.firmware_revision = raw.get("Firmware revision", "")
        self.firmware_date = raw.get("Firmware date", "")
        self.board = raw.get("Board information", "")
        self.craft_name = raw.get("Craft name", "")
        self.log_start = raw.get("Log start datetime", "")

        self.i_interval = _int(raw, "I interval", 32)
        self.p_interval, self.p_denom = _parse_p_interval(raw)
        self.minthrottle = _int(raw, "minthrottle", 1070)
        self.maxthrottle = _int(raw, "maxthrottle", 2000)
        self.vbatref = _int(raw, "vbatref", 0)
        self.looptime = _int(raw, "looptime", 312)
        self.gyro_scale = _parse_gyro_scale(raw.get("gyro_scale"))

        self.motor_output_low = self.minthrottle
        self.motor_output_range = 0
        parts = raw.get("motorOutput", "").split(",")
        if len(parts) >= 2:
            try:
                self.motor_output_low = int(parts[0])
                self.motor_output_range = int(parts[1]) - int(parts[0])
            except ValueError:
                pass

        i_def = _parse_field_def(raw, "I")
        self.field_defs = {
            "I": i_def,
            "P": _parse_field_def(raw, "P", fallback=i_def),
            "S": _parse_field_def(raw, "S"),
            "G": _parse_field_def(raw, "G"),
            "H": _parse_field_def(raw, "H"),
        }

    @property
    def sample_rate(self):
        """Logged frame rate in Hz, from looptime and the P interval."""
        period_us = self.looptime * max(1, self.p_interval) * max(1, self.p_denom)
        return 1e6 / period_us if period_us > 0 else None

    def __repr__(self):
        return f"<LogHeader {self.firmware_revision or self.product!r}>"


class LogSession:
    def __init__(self, index, header, flight_data, corrupted_frame_count=0, warnings=None):
        self.index = index
        self.header = header
        self.flight_data = flight_data
        self.corrupted_frame_count = corrupted_frame_count
        self.warnings = warnings or []

    def __repr__(self):
        return (f"<LogSession {self.index}: {self.flight_data.frame_count} frames, "
                f"{self.corrupted_frame_count} corrupt>")


# ─── Header Parsing ───────────────────────────────────────────────────────────

def _int(raw, key, default=0):
    try:
        return int(str(raw.get(key, default)).strip())
    except (ValueError, TypeError):
        return default


def _parse_p_interval(raw):
    """'P interval' is "N/D" or "N"; older logs only carry 'P ratio'."""
    text = raw.get("P interval")
    if not text:
        return max(1, _int(raw, "P ratio", 1)), 1
    num, _, denom = text.partition("/")
    try:
        n = int(num) or 1
    except ValueError:
        n = 1
    try:
        d = int(denom) if denom else 1
    except ValueError:
        d = 1
    return n, d or 1


def _parse_gyro_scale(text):
    # Written as the hex bit pattern of a float32, e.g. 0x3d08888a
    if not text:
        return 0.0305176
    text = text.strip()
    try:
        if text.lower().startswith("0x"):
            return struct.unpack("<f", struct.pack("<I", int(text, 16)))[0]
        return float(text)
    except (ValueError, struct.error):
        return 0.0305176


def _int_list(raw, key, pad_to):
    result = []
    for x in raw.get(key, "").split(","):
        x = x.strip()
        if x:
            try:
                result.append(int(x))
            except ValueError:
                result.append(0)
    return (result + [0] * pad_to)[:pad_to]


def _parse_field_def(raw, frame_type, fallback=None):
    names_str = raw.get(f"Field {frame_type} name", "")
    if names_str:
        names = [n.strip() for n in names_str.split(",") if n.strip()]
    elif fallback:
        # P-frames reuse the I-frame field names
        names = fallback["names"]
    else:
        return None
    if not raw.get(f"Field {frame_type} predictor") and not raw.get(f"Field {frame_type} encoding"):
        return None
    n = len(names)
    return {
        "names": names,
        "signed": _int_list(raw, f"Field {frame_type} signed", n),
        "predictor": _int_list(raw, f"Field {frame_type} predictor", n),
        "encoding": _int_list(raw, f"Field {frame_type} encoding", n),
        "count": n,
    }


def find_session_boundaries(data):
    """Byte offsets of every "H Product:" line, one per log."""
    bounds = []
    pos = data.find(SESSION_MARKER)
    while pos >= 0:
        bounds.append(pos)
        pos = data.find(SESSION_MARKER, pos + len(SESSION_MARKER))
    return bounds


def parse_header(data, start, end):
    """Parse the header block at *start*. Returns (LogHeader, body offset)."""
    raw = {}
    pos = start
    while pos < end and data.startswith(HEADER_PREFIX, pos):
        nl = data.find(b"\n", pos, end)
        if nl < 0:
            nl = end
        line = data[pos + 2:nl].decode("latin-1").rstrip("\r")
        key, sep, value = line.partition(":")
        if sep:
            raw[key.strip()] = value.strip()
        pos = nl + 1
    return LogHeader(raw), min(pos, end)


def _firmware_version(text):
    match = re.search(r"(\d+)\.(\d+)\.(\d+)", text or "")
    return tuple(int(g) for g in match.groups()) if match else None


def validate_header(header, limits=None):
    """Warnings for logging setups that weaken the analysis.

    A slow logging rate hides motor noise. Before 4.6 the unfiltered gyro
    only reaches the log with debug_mode GYRO_SCALED.
    """
    lim = merge_config(DECODER_LIMITS, limits)
    warnings = []
    rate = header.sample_rate
    if rate and rate < lim["min_logging_rate_hz"]:
        warnings.append(f"logging rate is {rate:.0f} Hz (Nyquist {rate / 2:.0f} Hz), motor noise "
                        f"may not be visible; log at {lim['min_logging_rate_hz']} Hz or faster")
    version = _firmware_version(header.firmware_revision)
    if version is None or version < (4, 6, 0):
        mode = header.raw.get("debug_mode", "").strip()
        if mode.isdigit() and int(mode) != GYRO_SCALED_DEBUG_MODE:
            warnings.append(f"debug_mode is {mode}, not GYRO_SCALED; the noise analysis may "
                            f"see filtered gyro")
    return warnings


def strip_flash_headers(data):
    """Remove MSP_DATAFLASH_READ reply headers from a raw flash dump.

    Dumps saved straight from the MSP replies interleave a 7-byte
    ([addr u32][size u16][compressed u8]) or 6-byte ([addr u32][size u16])
    header with every chunk. Clean logs start with 'H' and are returned
    untouched.
    """
    if len(data) < 7 or data[0] == ord("H"):
        return data
    size = struct.unpack_from("<H", data, 4)[0]
    for header_size in (7, 6):
        if len(data) > header_size and data[header_size] == ord("H") and 0 < size < 4096:
            break
    else:
        return data

    chunks = []
    offset = 0
    while offset + 6 <= len(data):
        size = struct.unpack_from("<H", data, offset + 4)[0]
        if size == 0 or size > 4096:
            chunks.append(data[offset:])
            offset = len(data)
            break
        start = offset + header_size
        chunks.append(data[start:start + size])
        offset = start + size
    if offset < len(data):
        chunks.append(data[offset:])
    log.info(f"Stripped {header_size}-byte flash headers from {len(data):,} byte dump")
    return b"".join(chunks)


def align_nearest(src_time, src_values, dst_time):
    """Resample (src_time, src_values) onto dst_time by nearest timestamp.

    Values are picked, never interpolated; ties go to the earlier sample.
    """
    src_time = np.asarray(src_time, dtype=np.float64)
    src_values = np.asarray(src_values, dtype=np.float64)
    dst_time = np.asarray(dst_time, dtype=np.float64)
    if len(src_time) == 0:
        return np.full(len(dst_time), np.nan)
    if len(src_time) == 1:
        return np.full(len(dst_time), src_values[0])
    idx = np.clip(np.searchsorted(src_time, dst_time), 1, len(src_time) - 1)
    left = src_time[idx - 1]
    right = src_time[idx]
    idx = idx - ((dst_time - left) <= (right - dst_time))
    return src_values[idx]


# ─── Frame Decoder ────────────────────────────────────────────────────────────

class FramePlan:
    """A frame definition compiled into reader steps and predictor functions.

    steps:      [(read, (field indices...)), ...] in stream order
    predictors: one function per field, (raw, i, current, prev, prev2) -> value
    """

    def __init__(self, field_def, steps, predictors):
        self.names = field_def["names"]
        self.count = field_def["count"]
        self.steps = steps
        self.predictors = predictors
        self.index = {name: i for i, name in enumerate(self.names)}


class _Run:
    """Frames of one continuous recording, collected while decoding."""

    def __init__(self):
        self.frames = []
        self.slow = []      # (anchor, values)
        self.gps = []
        self.corrupted = 0
        self.warnings = []


class BlackboxDecoder:
    """Stateful decoder for the frames that follow one header block."""

    # Encodings (blackbox.c)
    ENC_SIGNED_VB = 0
    ENC_UNSIGNED_VB = 1
    ENC_NEG_14BIT = 3
    ENC_TAG8_8SVB = 6
    ENC_TAG2_3S32 = 7
    ENC_TAG8_4S16 = 8
    ENC_NULL = 9

    # Predictors
    PRED_ZERO = 0
    PRED_PREVIOUS = 1
    PRED_STRAIGHT_LINE = 2
    PRED_AVERAGE_2 = 3
    PRED_MINTHROTTLE = 4
    PRED_MOTOR_0 = 5
    PRED_INC = 6
    PRED_HOME_COORD = 7
    PRED_1500 = 8
    PRED_VBATREF = 9
    PRED_LAST_MAIN_FRAME_TIME = 10
    PRED_MINMOTOR = 11

    FRAME_I, FRAME_P, FRAME_E = ord("I"), ord("P"), ord("E")
    FRAME_S, FRAME_G, FRAME_H = ord("S"), ord("G"), ord("H")
    VALID_FRAMES = frozenset((FRAME_I, FRAME_P, FRAME_E, FRAME_S, FRAME_G, FRAME_H))

    # Event types and their payloads
    EVT_SYNC_BEEP = 0               # unsigned VB time
    EVT_INFLIGHT_ADJUSTMENT = 13    # u8 function, signed VB or 4-byte float
    EVT_LOGGING_RESUME = 14         # unsigned VB iteration, unsigned VB time
    EVT_DISARM = 15                 # unsigned VB reason
    EVT_FLIGHT_MODE = 30            # unsigned VB flags, unsigned VB last flags
    EVT_LOG_END = 255               # followed by "End of log\0"

    def __init__(self, header, limits=None):
        self.header = header
        self.limits = merge_config(DECODER_LIMITS, limits)
        self.warnings = []

        self._predictor_table = {
            self.PRED_ZERO: self._pred_zero,
            self.PRED_PREVIOUS: self._pred_previous,
            self.PRED_STRAIGHT_LINE: self._pred_straight_line,
            self.PRED_AVERAGE_2: self._pred_average_2,
            self.PRED_MINTHROTTLE: self._pred_minthrottle,
            self.PRED_MOTOR_0: self._pred_motor_0,
            self.PRED_INC: self._pred_increment,
            self.PRED_HOME_COORD: self._pred_home_coord,
            self.PRED_1500: self._pred_servo_center,
            self.PRED_VBATREF: self._pred_vbatref,
            self.PRED_LAST_MAIN_FRAME_TIME: self._pred_last_main_time,
            self.PRED_MINMOTOR: self._pred_minmotor,
        }

        defs = header.field_defs
        self.plans = {ft: self._compile(defs[ft]) for ft in defs if defs[ft]}
        self.i_plan = self.plans.get("I")
        self.p_plan = self.plans.get("P")

        self._motor0 = self.i_plan.index.get("motor[0]") if self.i_plan else None
        self._home = [0, 0]
        self._home_slot = {}
        g_plan = self.plans.get("G")
        if g_plan:
            slots = [i for i, p in enumerate(defs["G"]["predictor"]) if p == self.PRED_HOME_COORD]
            self._home_slot = {i: n % 2 for n, i in enumerate(slots)}
        self._last_main_time = 0

        # P-frame columns in I-frame order
        if self.i_plan and self.p_plan:
            self._p_to_i = [self.i_plan.index.get(name) for name in self.p_plan.names]
        else:
            self._p_to_i = []

        self.buf = b""
        self.pos = 0
        self.end = 0

    # ─── Decode Plan ─────────────────────────────────────────────────────────

    def _compile(self, field_def):
        readers = {
            self.ENC_SIGNED_VB: lambda: (self._read_signed_vb(),),
            self.ENC_UNSIGNED_VB: lambda: (self._read_unsigned_vb(),),
            self.ENC_NEG_14BIT: lambda: (self._read_neg_14bit(),),
            self.ENC_NULL: lambda: (0,),
        }
        enc = field_def["encoding"]
        count = field_def["count"]
        steps = []
        i = 0
        while i < count:
            e = enc[i]
            if e == self.ENC_TAG2_3S32:
                steps.append((self._read_tag2_3s32, tuple(range(i, min(i + 3, count)))))
                i += 3
            elif e == self.ENC_TAG8_4S16:
                steps.append((self._read_tag8_4s16, tuple(range(i, min(i + 4, count)))))
                i += 4
            elif e == self.ENC_TAG8_8SVB:
                run = 0
                while i + run < count and enc[i + run] == self.ENC_TAG8_8SVB and run < 8:
                    run += 1
                steps.append((self._tag8_8svb_reader(run), tuple(range(i, i + run))))
                i += run
            else:
                if e not in readers:
                    self.warnings.append(f"unknown encoding {e} for {field_def['names'][i]}, "
                                         f"read as signed VB")
                steps.append((readers.get(e, readers[self.ENC_SIGNED_VB]), (i,)))
                i += 1

        predictors = []
        for name, pred in zip(field_def["names"], field_def["predictor"]):
            if pred not in self._predictor_table:
                self.warnings.append(f"unknown predictor {pred} for {name}, value taken as is")
            predictors.append(self._predictor_table.get(pred, self._pred_zero))
        return FramePlan(field_def, steps, predictors)

    # ─── Binary Primitives ───────────────────────────────────────────────────

    def _read_byte(self):
        if self.pos >= self.end:
            raise IndexError("EOF")
        b = self.buf[self.pos]
        self.pos += 1
        return b

    def _read_unsigned_vb(self):
        result, shift = 0, 0
        for _ in range(5):
            b = self._read_byte()
            result |= (b & 0x7F) << shift
            if not (b & 0x80):
                if result > UINT32_MAX:
                    raise FrameCorruptError("variable-byte value overflows 32 bits")
                return result
            shift += 7
        raise FrameCorruptError("variable-byte integer longer than 5 bytes")

    def _read_signed_vb(self):
        u = self._read_unsigned_vb()
        return (u >> 1) ^ -(u & 1)  # ZigZag

    def _read_neg_14bit(self):
        v = self._read_unsigned_vb() & 0x3FFF
        if v & 0x2000:
            v -= 0x4000
        return -v

    def _read_tag2_3s32(self):
        """Three values sharing one lead byte; its top two bits pick the width."""
        lead = self._read_byte()
        selector = lead >> 6
        if selector == 0:
            return [_sign_extend((lead >> 4) & 0x03, 2),
                    _sign_extend((lead >> 2) & 0x03, 2),
                    _sign_extend(lead & 0x03, 2)]
        if selector == 1:
            b = self._read_byte()
            return [_sign_extend(lead & 0x0F, 4),
                    _sign_extend(b >> 4, 4),
                    _sign_extend(b & 0x0F, 4)]
        if selector == 2:
            b1 = self._read_byte()
            b2 = self._read_byte()
            return [_sign_extend(lead & 0x3F, 6),
                    _sign_extend(b1 & 0x3F, 6),
                    _sign_extend(b2 & 0x3F, 6)]
        # Per-field 8/16/24/32 bit little-endian values
        values = []
        for i in range(3):
            n_bytes = ((lead >> (i * 2)) & 0x03) + 1
            v = 0
            for k in range(n_bytes):
                v |= self._read_byte() << (8 * k)
            values.append(_sign_extend(v, 8 * n_bytes))
        return values

    def _read_tag8_4s16(self):
        """Four values, 2-bit selectors, nibble-packed payload (data version 2)."""
        selector = self._read_byte()
        values = [0, 0, 0, 0]
        half = False  # a low nibble of buf is still pending
        buf = 0
        for i in range(4):
            kind = selector & 0x03
            if kind == 1:
                if not half:
                    buf = self._read_byte()
                    values[i] = _sign_extend(buf >> 4, 4)
                else:
                    values[i] = _sign_extend(buf & 0x0F, 4)
                half = not half
            elif kind == 2:
                if not half:
                    values[i] = _sign_extend(self._read_byte(), 8)
                else:
                    v = (buf & 0x0F) << 4
                    buf = self._read_byte()
                    values[i] = _sign_extend(v | (buf >> 4), 8)
            elif kind == 3:
                if not half:
                    v = (self._read_byte() << 8) | self._read_byte()
                else:
                    hi = (buf & 0x0F) << 4
                    buf = self._read_byte()
                    hi |= buf >> 4
                    lo = (buf & 0x0F) << 4
                    buf = self._read_byte()
                    lo |= buf >> 4
                    v = (hi << 8) | lo
                values[i] = _sign_extend(v, 16)
            selector >>= 2
        return values

    def _tag8_8svb_reader(self, count):
        def read():
            if count == 1:
                # A lone field is written without the tag byte
                return (self._read_signed_vb(),)
            tag = self._read_byte()
            return [self._read_signed_vb() if tag & (1 << i) else 0 for i in range(count)]
        return read

    # ─── Predictors ──────────────────────────────────────────────────────────

    def _pred_zero(self, raw, i, cur, prev, prev2):
        return raw

    def _pred_previous(self, raw, i, cur, prev, prev2):
        return raw + prev[i] if prev else raw

    def _pred_straight_line(self, raw, i, cur, prev, prev2):
        if not prev:
            return raw
        older = prev2 or prev
        return raw + 2 * prev[i] - older[i]

    def _pred_average_2(self, raw, i, cur, prev, prev2):
        if not prev:
            return raw
        if not prev2:
            return raw + prev[i]
        total = prev[i] + prev2[i]
        half = abs(total) // 2
        return raw + (half if total >= 0 else -half)  # C integer division

    def _pred_minthrottle(self, raw, i, cur, prev, prev2):
        return raw + self.header.minthrottle

    def _pred_minmotor(self, raw, i, cur, prev, prev2):
        return raw + self.header.motor_output_low

    def _pred_motor_0(self, raw, i, cur, prev, prev2):
        if self._motor0 is not None and self._motor0 < i:
            return raw + cur[self._motor0]
        return raw

    def _pred_increment(self, raw, i, cur, prev, prev2):
        if not prev:
            return raw + 1
        return raw + prev[i] + self._skipped_frames(prev) + 1

    def _skipped_frames(self, prev):
        """Iterations the P interval left out since the frame in prev."""
        it = self.p_plan.index.get("loopIteration") if self.p_plan else None
        if it is None:
            return 0
        h = self.header
        i_interval = max(1, h.i_interval)
        skipped = 0
        idx = prev[it] + 1
        while skipped < i_interval and not self._should_have_frame(idx):
            skipped += 1
            idx += 1
        return skipped

    def _should_have_frame(self, idx):
        h = self.header
        return (idx % max(1, h.i_interval) + h.p_interval - 1) % max(1, h.p_denom) < h.p_interval

    def _pred_home_coord(self, raw, i, cur, prev, prev2):
        return raw + self._home[self._home_slot.get(i, 0)]

    def _pred_servo_center(self, raw, i, cur, prev, prev2):
        return raw + 1500

    def _pred_vbatref(self, raw, i, cur, prev, prev2):
        return raw + self.header.vbatref

    def _pred_last_main_time(self, raw, i, cur, prev, prev2):
        return raw + self._last_main_time

    # ─── Frame Decoding ──────────────────────────────────────────────────────

    def _read_frame(self, plan, prev=None, prev2=None):
        raw = [0] * plan.count
        for read, targets in plan.steps:
            for idx, v in zip(targets, read()):
                raw[idx] = v
        values = [0] * plan.count
        for i, predict in enumerate(plan.predictors):
            v = predict(raw[i], i, values, prev, prev2)
            if v < INT32_MIN or v > UINT32_MAX:
                raise FrameCorruptError(f"{plan.names[i]} out of 32-bit range")
            values[i] = v
        return values

    def _at_frame_boundary(self):
        return self.pos >= self.end or self.buf[self.pos] in self.VALID_FRAMES

    def _resync(self):
        while self.pos < self.end:
            if self.buf[self.pos] in self.VALID_FRAMES:
                return True
            self.pos += 1
        return False

    def _parse_event(self):
        """Consume an event frame. Returns its type, or None when unknown."""
        evt = self._read_byte()
        if evt == self.EVT_SYNC_BEEP or evt == self.EVT_DISARM:
            self._read_unsigned_vb()
        elif evt == self.EVT_INFLIGHT_ADJUSTMENT:
            func = self._read_byte()
            if func > 127:
                for _ in range(4):
                    self._read_byte()
            else:
                self._read_signed_vb()
        elif evt == self.EVT_LOGGING_RESUME or evt == self.EVT_FLIGHT_MODE:
            self._read_unsigned_vb()
            self._read_unsigned_vb()
        elif evt == self.EVT_LOG_END:
            if self.buf[self.pos:self.pos + len(END_OF_LOG_MESSAGE)] != END_OF_LOG_MESSAGE:
                return -1  # a stray 0xFF, not a real end marker
            self.pos += len(END_OF_LOG_MESSAGE)
        else:
            return None
        return evt

    def _temporal(self, plan, values, last):
        """(iteration, time) of a frame, None where the field is absent."""
        it = plan.index.get("loopIteration")
        t = plan.index.get("time")
        return (values[it] if it is not None else None,
                values[t] if t is not None else None)

    def _i_frame_continuous(self, stamp, last):
        lim = self.limits
        it, t = stamp
        last_it, last_t = last
        if it is not None and last_it is not None:
            if it >= last_it + lim["max_iteration_jump"]:
                return False
            if it < last_it - lim["max_iteration_backward"]:
                return False
        if t is not None and last_t is not None:
            if t >= last_t + lim["max_time_jump_us"]:
                return False
            if t < last_t - lim["max_time_backward_us"]:
                return False
        return True

    def _p_frame_valid(self, stamp, last):
        lim = self.limits
        it, t = stamp
        last_it, last_t = last
        if it is not None and last_it is not None:
            if it < last_it or it >= last_it + lim["max_iteration_jump"]:
                return False
        if t is not None and last_t is not None:
            if t < last_t or t >= last_t + lim["max_time_jump_us"]:
                return False
        return True

    def _corrupt(self, run, offset, reason):
        run.corrupted += 1
        run.warnings.append(f"corrupt frame at byte {offset}: {reason}")
        log.debug(f"corrupt frame at byte {offset}: {reason}")

    def decode_frames(self, buf, start, end, progress=None, session_index=0):
        """Decode the frames in buf[start:end].

        Returns a list of runs; a new run starts when an intact I-frame is
        discontinuous with the previous frames (a new recording without a
        new header).
        """
        self.buf, self.pos, self.end = buf, start, end
        run = _Run()
        runs = [run]
        if self.i_plan is None:
            return runs

        prev = prev2 = None
        last = (None, None)
        slow_prev = None
        interval = self.limits["progress_interval_bytes"]
        last_report = start
        max_len = self.limits["max_frame_length"]

        self._resync()
        while self.pos < self.end:
            if self.pos - last_report >= interval:
                last_report = self.pos
                report(progress, bytes_processed=self.pos, total_bytes=len(buf),
                       current_session=session_index,
                       percent=round(self.pos * 100 / max(len(buf), 1)))

            frame_start = self.pos
            marker = self._read_byte()

            if marker == self.FRAME_I or marker == self.FRAME_P:
                is_i = marker == self.FRAME_I
                plan = self.i_plan if is_i else self.p_plan
                if plan is None:
                    self._corrupt(run, frame_start, "P-frame without field definitions")
                    prev = prev2 = None
                    self._resync()
                    continue
                try:
                    if is_i:
                        values = self._read_frame(plan)
                    else:
                        # Consumed even without history so the stream stays aligned
                        zeros = [0] * plan.count
                        values = self._read_frame(plan, prev or zeros, prev2 or prev or zeros)
                    if self.pos - frame_start > max_len:
                        raise FrameCorruptError(f"frame longer than {max_len} bytes")
                except (IndexError, ValueError) as e:
                    self._corrupt(run, frame_start, str(e))
                    prev = prev2 = None
                    self.pos = frame_start + 1
                    self._resync()
                    continue

                intact = self._at_frame_boundary()
                stamp = self._temporal(plan, values, last)

                if is_i:
                    continuous = self._i_frame_continuous(stamp, last)
                    if intact and not continuous and run.frames:
                        log.info(f"Discontinuity at byte {frame_start}, starting a new session")
                        run = _Run()
                        runs.append(run)
                        continuous = True
                    accept = continuous
                else:
                    if prev is None:
                        # No history since the last corruption; wait for an I-frame
                        if not intact:
                            self._corrupt(run, frame_start, "no frame marker after P-frame")
                            self._resync()
                        continue
                    accept = self._p_frame_valid(stamp, last)

                if accept:
                    if is_i:
                        run.frames.append(values)
                        prev = prev2 = values
                    else:
                        run.frames.append(self._p_to_i_schema(values))
                        prev2, prev = prev, values
                    last = stamp
                    if stamp[1] is not None:
                        self._last_main_time = stamp[1]
                    if not intact:
                        self._corrupt(run, self.pos, "frame marker lost, next frame unreadable")
                        prev = prev2 = None
                else:
                    self._corrupt(run, frame_start,
                                  f"{'I' if is_i else 'P'}-frame iteration/time out of sequence")
                    prev = prev2 = None
                if not intact:
                    self._resync()

            elif marker == self.FRAME_E:
                try:
                    evt = self._parse_event()
                except (IndexError, ValueError) as e:
                    self._corrupt(run, frame_start, f"event frame: {e}")
                    self._resync()
                    continue
                if evt == self.EVT_LOG_END:
                    self.pos = self.end
                    break
                if evt is None or not self._at_frame_boundary():
                    self._corrupt(run, frame_start, "unrecognised event frame")
                    self._resync()

            elif marker in (self.FRAME_S, self.FRAME_G, self.FRAME_H):
                kind = chr(marker)
                plan = self.plans.get(kind)
                if plan is None:
                    self._corrupt(run, frame_start, f"{kind}-frame without field definitions")
                    prev = prev2 = None
                    self._resync()
                    continue
                try:
                    if kind == "S":
                        values = self._read_frame(plan, slow_prev)
                    else:
                        values = self._read_frame(plan)
                except (IndexError, ValueError) as e:
                    self._corrupt(run, frame_start, f"{kind}-frame: {e}")
                    self._resync()
                    continue
                if not self._at_frame_boundary():
                    self._corrupt(run, frame_start, f"no frame marker after {kind}-frame")
                    prev = prev2 = None
                    self._resync()
                    continue
                anchor = self._anchor(run)
                if kind == "S":
                    slow_prev = values
                    run.slow.append((anchor, values))
                elif kind == "G":
                    run.gps.append((anchor, values))
                else:
                    self._home = (values + [0, 0])[:2]

            else:
                # Only reachable at the very start of a body
                self._resync()

        report(progress, bytes_processed=self.end, total_bytes=len(buf),
               current_session=session_index,
               percent=round(self.end * 100 / max(len(buf), 1)))
        return runs

    def _p_to_i_schema(self, values):
        if self._p_to_i == list(range(len(values))) and len(values) == self.i_plan.count:
            return values
        mapped = [0] * self.i_plan.count
        for p_idx, i_idx in enumerate(self._p_to_i):
            if i_idx is not None:
                mapped[i_idx] = values[p_idx]
        return mapped

    def _anchor(self, run):
        """Position of an auxiliary frame on the main time line."""
        it = self.i_plan.index.get("loopIteration")
        if run.frames and it is not None:
            return run.frames[-1][it]
        return len(run.frames) - 1

    # ─── Flight Data ─────────────────────────────────────────────────────────

    def build_flight_data(self, run):
        """Turn a run of decoded frames into FlightData. Returns (data, warnings)."""
        warnings = []
        names = self.i_plan.names
        it_idx = self.i_plan.index.get("loopIteration")
        frames = run.frames
        if it_idx is not None:
            frames = sorted(frames, key=lambda f: f[it_idx])
        table = np.asarray(frames, dtype=np.float64).reshape(len(frames), len(names))
        n = len(table)
        columns = {name: table[:, i] for i, name in enumerate(names)}

        sample_rate = self.header.sample_rate
        time_us = columns.get("time")
        if not sample_rate or sample_rate <= 10:
            sample_rate = 1000.0
            if time_us is not None and n > 10:
                diffs = np.diff(time_us)
                good = diffs[(diffs > 0) & (diffs < 1e7)]
                if len(good) > 10:
                    sample_rate = float(1e6 / np.median(good))
        dt = 1.0 / sample_rate

        synthesize = True
        if time_us is not None:
            time_s = time_us / 1e6
            deltas = np.diff(time_s)
            synthesize = bool(np.any(deltas < 0) or np.any(deltas > 10))
            if synthesize:
                warnings.append("time field is not monotonic, using synthesized time")
        if synthesize:
            time_s = np.arange(n) * dt

        duration = float(time_s[-1] - time_s[0]) if n > 1 else n * dt

        def channel(*candidates):
            for name in candidates:
                if name in columns:
                    return TimeSeries(time_s, columns[name])
            return TimeSeries(time_s, np.zeros(n))

        gyro = [channel(f"gyroADC[{a}]", f"gyroData[{a}]", f"gyro[{a}]") for a in range(3)]
        setpoint = [channel(f"setpoint[{a}]", f"rcCommand[{a}]") for a in range(4)]
        pid_p = [channel(f"axisP[{a}]") for a in range(3)]
        pid_i = [channel(f"axisI[{a}]") for a in range(3)]
        pid_d = [channel(f"axisD[{a}]") for a in range(3)]
        pid_f = [channel(f"axisF[{a}]") for a in range(3)]
        motor = [channel(f"motor[{m}]") for m in range(4)]
        debug = [channel(f"debug[{k}]") for k in range(8) if f"debug[{k}]" in columns]

        if "gyroADC[0]" not in columns and "gyroData[0]" not in columns and "gyro[0]" not in columns:
            warnings.append("missing gyroADC fields, gyro data will be empty")
        else:
            warnings.extend(_gyro_sanity(gyro))

        main_anchor = columns[names[it_idx]] if it_idx is not None else np.arange(n, dtype=np.float64)
        slow = self._align_aux(run.slow, self.plans.get("S"), main_anchor, time_s)
        gps = self._align_aux(run.gps, self.plans.get("G"), main_anchor, time_s)

        data = FlightData(gyro, setpoint, pid_p, pid_i, pid_d, pid_f, motor,
                          debug=debug, slow=slow, gps=gps, sample_rate=sample_rate,
                          duration=duration, frame_count=n)
        return data, warnings

    def _align_aux(self, records, plan, main_anchor, time_s):
        if not records or plan is None:
            return {}
        anchors = np.asarray([a for a, _ in records], dtype=np.float64)
        table = np.asarray([v for _, v in records], dtype=np.float64)
        order = np.argsort(anchors, kind="stable")
        anchors, table = anchors[order], table[order]
        return {name: TimeSeries(time_s, align_nearest(anchors, table[:, i], main_anchor))
                for i, name in enumerate(plan.names)}


def _sign_extend(value, bits):
    sign = 1 << (bits - 1)
    return (value & (sign - 1)) - (value & sign)


def _gyro_sanity(gyro):
    warnings = []
    for axis, series in zip(("roll", "pitch", "yaw"), gyro):
        vals = series.values
        if len(vals) == 0:
            continue
        lo, hi = float(vals.min()), float(vals.max())
        zeros = int(np.count_nonzero(vals == 0))
        if hi - lo < 1:
            warnings.append(f"gyro {axis}: constant value {lo:.0f}, likely a parsing error")
        elif zeros > len(vals) * 0.9:
            warnings.append(f"gyro {axis}: {zeros * 100 / len(vals):.0f}% zeros, likely a parsing error")
        elif hi > 32000 or lo < -32000:
            warnings.append(f"gyro {axis}: extreme range [{lo:.0f}, {hi:.0f}], possible corruption")
    return warnings


# ─── Entry Points ─────────────────────────────────────────────────────────────

def decode(data, progress=None, limits=None):
    """Decode a blackbox byte stream.

    Args:
        data: raw file contents (bytes-like)
        progress: optional callable receiving {"bytes_processed", "total_bytes",
            "current_session", "percent"}
        limits: optional overrides for DECODER_LIMITS

    Returns:
        (sessions, corrupted_frame_count, warnings)
    """
    data = strip_flash_headers(bytes(data))
    sessions, warnings = [], []
    corrupted = 0
    if not data:
        return sessions, corrupted, warnings

    bounds = find_session_boundaries(data)
    if not bounds:
        warnings.append("no blackbox header found")
        return sessions, corrupted, warnings

    for n, start in enumerate(bounds):
        end = bounds[n + 1] if n + 1 < len(bounds) else len(data)
        header, body = parse_header(data, start, end)
        if header.field_defs["I"] is None:
            warnings.append(f"log at byte {start} has no I-frame field definitions")
            continue

        decoder = BlackboxDecoder(header, limits)
        decoder.warnings.extend(validate_header(header, limits))
        warnings.extend(decoder.warnings)
        runs = decoder.decode_frames(data, body, end, progress=progress,
                                     session_index=len(sessions))
        for run in runs:
            corrupted += run.corrupted
            if not run.frames:
                warnings.extend(run.warnings)
                warnings.append(f"log at byte {start} held no decodable frames")
                continue
            flight_data, extra = decoder.build_flight_data(run)
            session = LogSession(len(sessions), header, flight_data,
                                 corrupted_frame_count=run.corrupted,
                                 warnings=decoder.warnings + run.warnings + extra)
            sessions.append(session)
            warnings.extend(run.warnings + extra)
            log.info(f"Session {session.index}: {flight_data.frame_count:,} frames, "
                     f"{flight_data.duration:.1f}s @ {flight_data.sample_rate:.0f}Hz, "
                     f"{run.corrupted} corrupt")

    return sessions, corrupted, warnings


def decode_file(filepath, progress=None, limits=None):
    with open(filepath, "rb") as f:
        data = f.read()
    log.info(f"Decoding {filepath} ({len(data):,} bytes)")
    return decode(data, progress=progress, limits=limits)
