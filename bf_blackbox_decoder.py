"""
Betaflight Blackbox Decoder
===========================
Decodes .bbl/.bfl blackbox logs into a list of LogFrame samples plus a
LogMetadata block (firmware identity, loop rate, PID profile, filter setup).

Flow: find "H Product:" → parse header lines → decode I/P/S/E/G/H frames →
map decoded field arrays to LogFrame → zero-base timestamps → metadata.

Usage:
    from bf_blackbox_decoder import parse_bbl_file
    frames, metadata = parse_bbl_file("LOG00001.BFL")
"""

import logging
import re

import numpy as np

from bf_bbl_codec import (
    ByteCursor, BitReader,
    read_tag8_8svb, read_tag2_3s32, read_tag2_3svariable, read_tag8_4s16,
    read_elias_delta_unsigned, read_elias_delta_signed, read_elias_gamma_signed,
)

log = logging.getLogger("blackbox")

AXES = ("roll", "pitch", "yaw")

LOG_START_MARKER = b"H Product:"
LOG_END_MESSAGE = b"End of log\x00"

DEFAULT_MINTHROTTLE = 1070
DEFAULT_VBATREF = 4095
DEFAULT_LOOPTIME_US = 125


class BlackboxDecodeError(ValueError):
    """Fatal decode failure: the buffer holds no decodable log."""


# ─── Header Parsing ──────────────────────────────────────────────────────────

_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")


def _parse_int(text, default=None):
    """Leading integer of a header value ("1/2" → 1), default when absent or 0."""
    if text is None:
        return default
    m = _INT_PREFIX.match(text)
    if not m:
        return default
    value = int(m.group(1))
    return value if value != 0 else default


def _split_header(value):
    if not value:
        return []
    return [s.strip() for s in value.split(",")]


def find_log_starts(buf):
    """Byte offsets of every "H Product:" marker in the buffer."""
    starts = []
    pos = buf.find(LOG_START_MARKER)
    while pos != -1:
        starts.append(pos)
        pos = buf.find(LOG_START_MARKER, pos + 1)
    return starts


def find_log_start(buf, start_from=0):
    return buf.find(LOG_START_MARKER, start_from)


class FieldDef:
    def __init__(self, name, signed, predictor, encoding, index):
        self.name = name
        self.signed = signed
        self.predictor = predictor
        self.encoding = encoding
        self.index = index

    def __repr__(self):
        return f"<FieldDef {self.index}:{self.name} pred={self.predictor} enc={self.encoding}>"


def _build_field_defs(header_map, frame_type):
    names = _split_header(header_map.get(f"Field {frame_type} name"))
    if not names:
        return []
    signed = _split_header(header_map.get(f"Field {frame_type} signed"))
    predictors = _split_header(header_map.get(f"Field {frame_type} predictor"))
    encodings = _split_header(header_map.get(f"Field {frame_type} encoding"))

    defs = []
    for i, name in enumerate(names):
        if name.startswith("gyroData"):
            # Legacy firmware name
            name = "gyroADC" + name[len("gyroData"):]
        defs.append(FieldDef(
            name,
            (_parse_int(signed[i], 0) if i < len(signed) else 0) != 0,
            _parse_int(predictors[i], 0) if i < len(predictors) else 0,
            _parse_int(encodings[i], 0) if i < len(encodings) else 0,
            i,
        ))
    return defs


class LogHeaders:
    """Parsed header block of one log: raw key/values plus the field schema."""

    def __init__(self, header_map, data_start):
        self.header_map = header_map
        self.data_start = data_start
        self.data_version = _parse_int(header_map.get("Data version"), 2)

        self.i_defs = _build_field_defs(header_map, "I")
        # P-frames share names/signedness with I-frames, own predictor/encoding
        p_pred = _split_header(header_map.get("Field P predictor"))
        p_enc = _split_header(header_map.get("Field P encoding"))
        self.p_defs = [
            FieldDef(d.name, d.signed,
                     _parse_int(p_pred[i], 0) if i < len(p_pred) else 0,
                     _parse_int(p_enc[i], 0) if i < len(p_enc) else 0,
                     i)
            for i, d in enumerate(self.i_defs)
        ]
        self.s_defs = _build_field_defs(header_map, "S")

        self.motor0_index = next((d.index for d in self.i_defs if d.name == "motor[0]"), -1)
        self.minthrottle = _parse_int(header_map.get("minthrottle"), DEFAULT_MINTHROTTLE)
        self.vbatref = _parse_int(header_map.get("vbatref"), DEFAULT_VBATREF)

        mo = header_map.get("motorOutput", "")
        if "," in mo:
            parts = mo.split(",")
            self.motor_output = (_parse_int(parts[0], 0), _parse_int(parts[1], 0))
        else:
            self.motor_output = (_parse_int(mo, 0), 0)

    def field_names(self):
        return [d.name for d in self.i_defs]


def parse_headers(buf, log_start):
    """Read "H key:value" lines from log_start until the first binary frame."""
    cursor = ByteCursor(buf, log_start)
    header_map = {}
    while not cursor.eof:
        saved = cursor.pos
        line = cursor.read_line()
        if line is None:
            break
        if not line.startswith("H "):
            cursor.pos = saved
            break
        key, sep, value = line[2:].partition(":")
        if sep:
            header_map[key.strip()] = value.strip()
    return LogHeaders(header_map, cursor.pos)


# ─── Native Frame Decoder ────────────────────────────────────────────────────
# Fields are decoded one by one with their predictor applied immediately, so
# MOTOR_0 can see motor[0] of the frame being decoded. Multi-field encodings
# consume a fixed number of following fields regardless of what those fields
# declare (TAG8_8SVB groups only consecutive TAG8_8SVB fields).

class BlackboxDecoder:
    """Frame-level decoder for one log's data section."""

    # Encoding types (from blackbox.c)
    ENC_SIGNED_VB = 0
    ENC_UNSIGNED_VB = 1
    ENC_NEG_14BIT = 3
    ENC_ELIAS_DELTA_U = 4
    ENC_ELIAS_DELTA_S = 5
    ENC_TAG8_8SVB = 6
    ENC_TAG2_3S32 = 7
    ENC_TAG8_4S16 = 8
    ENC_NULL = 9
    ENC_TAG2_3S_VARIABLE = 10
    ENC_ELIAS_GAMMA_S = 11

    # Predictor types
    PRED_ZERO = 0
    PRED_PREVIOUS = 1
    PRED_STRAIGHT_LINE = 2
    PRED_AVERAGE_2 = 3
    PRED_MINTHROTTLE = 4
    PRED_MOTOR_0 = 5
    PRED_INC = 6
    PRED_1500 = 8
    PRED_VBATREF = 9
    PRED_LAST_MAIN_FRAME_TIME = 10
    PRED_MINMOTOR = 11

    FRAME_I, FRAME_P, FRAME_E = ord('I'), ord('P'), ord('E')
    FRAME_S, FRAME_G, FRAME_H = ord('S'), ord('G'), ord('H')
    VALID_FRAMES = {FRAME_I, FRAME_P, FRAME_E, FRAME_S, FRAME_G, FRAME_H}

    # Event types and their payloads
    EVT_SYNC_BEEP = 0          # unsigned VB (time)
    EVT_LOGGING_RESUME = 14    # unsigned VB (iteration) + unsigned VB (time)
    EVT_DISARM = 15            # unsigned VB (reason)
    EVT_FLIGHT_MODE = 30       # unsigned VB (flags) + unsigned VB (last flags)
    EVT_LOG_END = 255

    _GROUP_SIZES = {ENC_TAG2_3S32: 3, ENC_TAG2_3S_VARIABLE: 3, ENC_TAG8_4S16: 4}
    _SINGLE_ENCODINGS = {ENC_SIGNED_VB, ENC_UNSIGNED_VB, ENC_NEG_14BIT, ENC_NULL,
                         ENC_ELIAS_DELTA_U, ENC_ELIAS_DELTA_S, ENC_ELIAS_GAMMA_S}

    def __init__(self, headers):
        self.headers = headers
        self.field_count = len(headers.i_defs)
        self.stats = {'i_frames': 0, 'p_frames': 0, 's_frames': 0, 'events': 0,
                      'skipped_gps': 0, 'errors': 0}

    # ─── Predictors ──────────────────────────────────────────────────────

    def _predict(self, predictor, i, residual, previous, previous2, current):
        if predictor == self.PRED_ZERO:
            return residual
        if predictor in (self.PRED_PREVIOUS, self.PRED_LAST_MAIN_FRAME_TIME):
            return residual + (previous[i] if previous else 0)
        if predictor == self.PRED_STRAIGHT_LINE:
            prev = previous[i] if previous else 0
            prev2 = previous2[i] if previous2 else prev
            return residual + 2 * prev - prev2
        if predictor == self.PRED_AVERAGE_2:
            prev = previous[i] if previous else 0
            prev2 = previous2[i] if previous2 else prev
            return residual + int((prev + prev2) / 2)  # truncates toward zero
        if predictor == self.PRED_MINTHROTTLE:
            return residual + self.headers.minthrottle
        if predictor == self.PRED_MOTOR_0:
            m0 = self.headers.motor0_index
            return residual + (current[m0] if 0 <= m0 < len(current) else 0)
        if predictor == self.PRED_1500:
            return residual + 1500
        if predictor == self.PRED_VBATREF:
            return residual + self.headers.vbatref
        if predictor == self.PRED_MINMOTOR:
            return residual + self.headers.motor_output[0]
        return residual

    # ─── Field Decoding ──────────────────────────────────────────────────

    def _decode_fields(self, cursor, defs, previous=None, previous2=None):
        """Decode one frame's fields. Raises IndexError on truncated input."""
        count = len(defs)
        current = [0] * count
        i = 0
        while i < count:
            fd = defs[i]

            if fd.predictor == self.PRED_INC:
                # No payload; counts up from the previous frame
                current[i] = 1 + (previous[i] if previous else 0)
                i += 1
                continue

            enc = fd.encoding
            if enc == self.ENC_TAG8_8SVB:
                run = 1
                while run < 8 and i + run < count and defs[i + run].encoding == self.ENC_TAG8_8SVB:
                    run += 1
                group = read_tag8_8svb(cursor, run)
            elif enc in self._GROUP_SIZES:
                if enc == self.ENC_TAG2_3S32:
                    group = read_tag2_3s32(cursor)
                elif enc == self.ENC_TAG2_3S_VARIABLE:
                    group = read_tag2_3svariable(cursor)
                else:
                    group = read_tag8_4s16(cursor)
            elif enc in self._SINGLE_ENCODINGS:
                group = [self._read_single(cursor, enc)]
            else:
                # Unknown encoding: nothing to read, hold the last value
                log.debug(f"Unknown encoding {enc} for field {fd.name}")
                current[i] = previous[i] if previous else 0
                i += 1
                continue

            for j, residual in enumerate(group):
                if i + j >= count:
                    break
                pred = defs[i + j].predictor
                current[i + j] = self._predict(pred, i + j, residual, previous, previous2, current)
            i += len(group)
        return current

    def _read_single(self, cursor, enc):
        if enc == self.ENC_SIGNED_VB:
            return cursor.read_signed_vb()
        if enc == self.ENC_UNSIGNED_VB:
            return cursor.read_unsigned_vb()
        if enc == self.ENC_NEG_14BIT:
            return cursor.read_neg_14bit()
        if enc == self.ENC_NULL:
            return 0
        if enc in (self.ENC_ELIAS_DELTA_U, self.ENC_ELIAS_DELTA_S, self.ENC_ELIAS_GAMMA_S):
            bits = BitReader(cursor)
            if enc == self.ENC_ELIAS_DELTA_U:
                value = read_elias_delta_unsigned(bits)
            elif enc == self.ENC_ELIAS_DELTA_S:
                value = read_elias_delta_signed(bits)
            else:
                value = read_elias_gamma_signed(bits)
            bits.byte_align()
            return value
        raise ValueError(f"not a single-field encoding: {enc}")

    # ─── Stream Navigation ───────────────────────────────────────────────

    def _scan_to_next_frame(self, cursor):
        while cursor.pos < cursor.end:
            if cursor.buf[cursor.pos] in self.VALID_FRAMES:
                return True
            cursor.pos += 1
        return False

    def _skip_event_frame(self, cursor):
        """Consume an event frame. Returns True when it marks the end of the log."""
        if cursor.eof:
            return False
        evt_type = cursor.read_byte()
        if evt_type == self.EVT_LOG_END:
            tail = cursor.read_bytes(len(LOG_END_MESSAGE))
            if tail == LOG_END_MESSAGE:
                return True
            # Not a real log end
            self._scan_to_next_frame(cursor)
        elif evt_type == self.EVT_LOGGING_RESUME or evt_type == self.EVT_FLIGHT_MODE:
            cursor.read_unsigned_vb()
            cursor.read_unsigned_vb()
        elif evt_type == self.EVT_SYNC_BEEP or evt_type == self.EVT_DISARM:
            cursor.read_unsigned_vb()
        else:
            self._scan_to_next_frame(cursor)
        return False

    # ─── Main Decode ─────────────────────────────────────────────────────

    def decode(self, buf, on_progress=None, end=None):
        """Decode the data section. Returns (main_frames, slow_frames).

        main_frames is a list of (frame_type, values) with values ordered as
        the I-frame field list; on_progress receives 0-100 in 5% steps.
        """
        headers = self.headers
        cursor = ByteCursor(buf, headers.data_start, end)
        main_frames = []
        slow_frames = []
        previous = previous2 = None

        total = max(cursor.end - headers.data_start, 1)
        last_report = 0

        while not cursor.eof:
            if on_progress is not None:
                pct = (cursor.pos - headers.data_start) * 100 // total
                if pct >= last_report + 5:
                    last_report = pct
                    on_progress(pct)

            start = cursor.pos
            byte = cursor.peek_byte()
            try:
                if byte == self.FRAME_I:
                    cursor.pos += 1
                    values = self._decode_fields(cursor, headers.i_defs, previous, previous2)
                    # Both history slots point at the I-frame
                    previous = previous2 = values
                    main_frames.append(('I', values))
                    self.stats['i_frames'] += 1

                elif byte == self.FRAME_P:
                    cursor.pos += 1
                    if previous is None:
                        # No I-frame to predict from yet
                        self._scan_to_next_frame(cursor)
                        continue
                    values = self._decode_fields(cursor, headers.p_defs, previous, previous2)
                    previous2, previous = previous, values
                    main_frames.append(('P', values))
                    self.stats['p_frames'] += 1

                elif byte == self.FRAME_S:
                    cursor.pos += 1
                    if headers.s_defs:
                        values = self._decode_fields(cursor, headers.s_defs)
                        slow_frames.append({d.name: v for d, v in zip(headers.s_defs, values)})
                        self.stats['s_frames'] += 1

                elif byte == self.FRAME_E:
                    cursor.pos += 1
                    self.stats['events'] += 1
                    if self._skip_event_frame(cursor):
                        log.debug(f"End of log at byte {cursor.pos}")
                        break

                elif byte in (self.FRAME_G, self.FRAME_H):
                    cursor.pos += 1
                    self._scan_to_next_frame(cursor)
                    self.stats['skipped_gps'] += 1

                else:
                    cursor.pos += 1
                    self._scan_to_next_frame(cursor)
                    self.stats['errors'] += 1

            except IndexError:
                # Truncated frame: drop it whole and resync past its marker
                self.stats['errors'] += 1
                cursor.pos = start + 1
                self._scan_to_next_frame(cursor)

        return main_frames, slow_frames


# ─── Frame Mapping ───────────────────────────────────────────────────────────

class LogFrame:
    """One decoded sample. Axis quantities are dicts keyed roll/pitch/yaw."""

    __slots__ = ("time", "loop_iteration", "gyro_adc", "setpoint", "pid_p", "pid_i",
                 "pid_d", "pid_sum", "motor", "rc_command", "throttle", "debug",
                 "flight_mode_flags", "state_flags")

    def __init__(self, time, loop_iteration, gyro_adc, setpoint, pid_p, pid_i, pid_d,
                 pid_sum, motor, rc_command, throttle, debug=None,
                 flight_mode_flags=None, state_flags=None):
        self.time = time
        self.loop_iteration = loop_iteration
        self.gyro_adc = gyro_adc
        self.setpoint = setpoint
        self.pid_p = pid_p
        self.pid_i = pid_i
        self.pid_d = pid_d
        self.pid_sum = pid_sum
        self.motor = motor
        self.rc_command = rc_command
        self.throttle = throttle
        self.debug = debug
        self.flight_mode_flags = flight_mode_flags
        self.state_flags = state_flags

    def __repr__(self):
        return f"<LogFrame t={self.time}us gyro={self.gyro_adc} throttle={self.throttle}>"


def build_field_index(headers):
    return {d.name: d.index for d in headers.i_defs}


def to_log_frame(values, field_index, frame_number):
    def field(name, default=0):
        idx = field_index.get(name)
        if idx is None or idx >= len(values):
            return default
        return values[idx]

    def per_axis(fmt):
        return {axis: field(fmt.format(n)) for n, axis in enumerate(AXES)}

    motors = []
    for m in range(8):
        idx = field_index.get(f"motor[{m}]")
        if idx is None:
            break
        motors.append(values[idx])
    if not motors:
        motors = [1000, 1000, 1000, 1000]

    throttle = field("rcCommand[3]", 1000)
    # Older firmware has no setpoint fields; a 0 setpoint also falls back
    setpoint = {axis: field(f"setpoint[{n}]") or field(f"rcCommand[{n}]")
                for n, axis in enumerate(AXES)}
    pid_p, pid_i, pid_d = per_axis("axisP[{}]"), per_axis("axisI[{}]"), per_axis("axisD[{}]")
    pid_sum = {axis: field(f"axisSum[{n}]") or (pid_p[axis] + pid_i[axis] + pid_d[axis])
               for n, axis in enumerate(AXES)}
    rc_command = per_axis("rcCommand[{}]")
    rc_command["throttle"] = throttle

    debug = None
    if "debug[0]" in field_index:
        debug = []
        for d in range(8):
            if f"debug[{d}]" not in field_index:
                break
            debug.append(field(f"debug[{d}]"))

    return LogFrame(
        time=field("time", frame_number * DEFAULT_LOOPTIME_US),
        loop_iteration=field("loopIteration", frame_number),
        gyro_adc=per_axis("gyroADC[{}]"),
        setpoint=setpoint,
        pid_p=pid_p, pid_i=pid_i, pid_d=pid_d, pid_sum=pid_sum,
        motor=motors,
        rc_command=rc_command,
        throttle=throttle,
        debug=debug,
        flight_mode_flags=field("flightModeFlags") if "flightModeFlags" in field_index else None,
        state_flags=field("stateFlags") if "stateFlags" in field_index else None,
    )


# ─── Metadata ────────────────────────────────────────────────────────────────

class _SettingsSnapshot:
    FIELDS = ()

    def __init__(self, **values):
        for name in self.FIELDS:
            setattr(self, name, values.pop(name, None))
        if values:
            raise TypeError(f"{type(self).__name__}: unknown fields {', '.join(sorted(values))}")

    def get(self, name):
        return getattr(self, name, None)

    def to_dict(self):
        return {name: getattr(self, name) for name in self.FIELDS if getattr(self, name) is not None}

    def __repr__(self):
        return f"<{type(self).__name__} {self.to_dict()}>"


class PidProfile(_SettingsSnapshot):
    """PID gains as logged; per-axis attributes are named <axis>_<term>."""

    FIELDS = (
        "roll_p", "roll_i", "roll_d", "pitch_p", "pitch_i", "pitch_d",
        "yaw_p", "yaw_i", "yaw_d",
        "roll_d_min", "pitch_d_min", "yaw_d_min",
        "roll_ff", "pitch_ff", "yaw_ff",
        "tpa_rate", "tpa_breakpoint", "dynamic_idle", "master_multiplier",
    )


class FilterSettings(_SettingsSnapshot):
    FIELDS = (
        "gyro_lpf1_type", "gyro_lpf1_cutoff", "gyro_lpf2_type", "gyro_lpf2_cutoff",
        "dterm_lpf1_type", "dterm_lpf1_cutoff", "dterm_lpf2_type", "dterm_lpf2_cutoff",
        "dynamic_notch_count", "dynamic_notch_q", "dynamic_notch_min_hz", "dynamic_notch_max_hz",
        "rpm_filter_harmonics", "rpm_filter_min_hz", "rpm_filter_q",
        "gyro_filter_multiplier", "dterm_filter_multiplier", "iterm_relax_cutoff",
    )


class LogMetadata:
    def __init__(self, firmware_type, firmware_version, firmware_revision, looptime,
                 gyro_rate, motor_count, field_names, debug_mode=None, craft_name=None,
                 pid_profile=None, filter_settings=None, frame_count=0, duration=0.0,
                 headers=None):
        self.firmware_type = firmware_type
        self.firmware_version = firmware_version
        self.firmware_revision = firmware_revision
        self.looptime = looptime          # effective logging rate, Hz
        self.gyro_rate = gyro_rate        # Hz
        self.motor_count = motor_count
        self.field_names = field_names
        self.debug_mode = debug_mode
        self.craft_name = craft_name
        self.pid_profile = pid_profile
        self.filter_settings = filter_settings
        self.frame_count = frame_count
        self.duration = duration          # seconds
        self.headers = headers or {}

    def to_dict(self):
        return {
            "firmware_type": self.firmware_type,
            "firmware_version": self.firmware_version,
            "firmware_revision": self.firmware_revision,
            "looptime_hz": self.looptime,
            "gyro_rate_hz": self.gyro_rate,
            "motor_count": self.motor_count,
            "debug_mode": self.debug_mode,
            "craft_name": self.craft_name,
            "frame_count": self.frame_count,
            "duration_s": self.duration,
            "pid_profile": self.pid_profile.to_dict() if self.pid_profile else None,
            "filter_settings": self.filter_settings.to_dict() if self.filter_settings else None,
        }


def _axis_triple(h, per_axis_key, triple_key):
    """Per-axis values from "<key>_roll" style headers or a "<key>:r,p,y" triple."""
    values = [_parse_int(h.get(per_axis_key.format(axis))) for axis in AXES]
    if all(v is None for v in values) and h.get(triple_key):
        parts = _split_header(h[triple_key])
        values = [_parse_int(parts[n]) if n < len(parts) else None for n in range(3)]
    return values


def extract_pid_profile(h):
    if not h.get("rollPID") and not h.get("pitchPID"):
        return None
    values = {}
    for axis in AXES:
        parts = _split_header(h.get(f"{axis}PID"))
        for n, term in enumerate(("p", "i", "d")):
            values[f"{axis}_{term}"] = _parse_int(parts[n], 0) if n < len(parts) else 0
    d_min = _axis_triple(h, "d_min_{}", "d_min")
    ff = _axis_triple(h, "feedforward_{}", "ff_weight")
    for n, axis in enumerate(AXES):
        values[f"{axis}_d_min"] = d_min[n]
        values[f"{axis}_ff"] = ff[n]
    values["tpa_rate"] = _parse_int(h.get("tpa_rate"))
    values["tpa_breakpoint"] = _parse_int(h.get("tpa_breakpoint"))
    values["dynamic_idle"] = _parse_int(h.get("dynamic_idle_min_rpm"))
    values["master_multiplier"] = _parse_int(h.get("simplified_master_multiplier"))
    return PidProfile(**values)


def _first(h, *keys):
    for key in keys:
        if key in h:
            return h[key]
    return None


def extract_filter_settings(h):
    fs = FilterSettings(
        gyro_lpf1_type=h.get("gyro_lpf1_type"),
        gyro_lpf1_cutoff=_parse_int(_first(h, "gyro_lpf1_static_hz", "gyro_lowpass_hz")),
        gyro_lpf2_type=h.get("gyro_lpf2_type"),
        gyro_lpf2_cutoff=_parse_int(_first(h, "gyro_lpf2_static_hz", "gyro_lowpass2_hz")),
        dterm_lpf1_type=h.get("dterm_lpf1_type"),
        dterm_lpf1_cutoff=_parse_int(_first(h, "dterm_lpf1_static_hz", "dterm_lowpass_hz")),
        dterm_lpf2_type=h.get("dterm_lpf2_type"),
        dterm_lpf2_cutoff=_parse_int(_first(h, "dterm_lpf2_static_hz", "dterm_lowpass2_hz")),
        dynamic_notch_count=_parse_int(h.get("dyn_notch_count")),
        dynamic_notch_q=_parse_int(h.get("dyn_notch_q")),
        dynamic_notch_min_hz=_parse_int(h.get("dyn_notch_min_hz")),
        dynamic_notch_max_hz=_parse_int(h.get("dyn_notch_max_hz")),
        rpm_filter_harmonics=_parse_int(h.get("rpm_filter_harmonics")),
        rpm_filter_min_hz=_parse_int(h.get("rpm_filter_min_hz")),
        rpm_filter_q=_parse_int(h.get("rpm_filter_q")),
        gyro_filter_multiplier=_parse_int(h.get("simplified_gyro_filter_multiplier")),
        dterm_filter_multiplier=_parse_int(h.get("simplified_dterm_filter_multiplier")),
        iterm_relax_cutoff=_parse_int(h.get("iterm_relax_cutoff")),
    )
    if not any((fs.gyro_lpf1_cutoff, fs.dterm_lpf1_cutoff, fs.dynamic_notch_count,
                fs.rpm_filter_harmonics, fs.gyro_filter_multiplier,
                fs.dterm_filter_multiplier, fs.iterm_relax_cutoff)):
        return None
    return fs


def _p_interval_denom(h):
    denom = _parse_int(h.get("frameIntervalPDenom"))
    if denom:
        return denom
    p_interval = h.get("P interval", "")
    if "/" in p_interval:
        # "1/2" → every 2nd loop is logged
        num, _, den = p_interval.partition("/")
        num, den = _parse_int(num, 1), _parse_int(den, 1)
        return max(den // max(num, 1), 1)
    return _parse_int(p_interval, 1)


def to_log_metadata(headers, frame_count, duration):
    h = headers.header_map
    looptime = _parse_int(h.get("looptime"), DEFAULT_LOOPTIME_US)
    field_names = headers.field_names()
    return LogMetadata(
        firmware_type=h.get("Firmware type", "Betaflight"),
        firmware_version=_first(h, "Firmware revision", "Firmware version") or "Unknown",
        firmware_revision=h.get("Firmware date"),
        looptime=1_000_000 / (looptime * _p_interval_denom(h)),
        gyro_rate=1_000_000 / looptime,
        motor_count=sum(1 for f in field_names if f.startswith("motor[")) or 4,
        field_names=field_names,
        debug_mode=h.get("debug_mode"),
        craft_name=h.get("Craft name"),
        pid_profile=extract_pid_profile(h),
        filter_settings=extract_filter_settings(h),
        frame_count=frame_count,
        duration=duration,
        headers=dict(h),
    )


# ─── Top-level Parse ─────────────────────────────────────────────────────────

class ParsedLog:
    def __init__(self, frames, metadata, slow_frames=None, stats=None):
        self.frames = frames
        self.metadata = metadata
        self.slow_frames = slow_frames or []
        self.stats = stats or {}

    def __iter__(self):
        # frames, metadata = parse_bbl_buffer(...)
        return iter((self.frames, self.metadata))


def parse_bbl_buffer(buf, on_progress=None, log_index=0):
    """Parse a blackbox buffer into frames and metadata.

    on_progress(percent, message) is called with a non-decreasing percentage.
    Raises BlackboxDecodeError when no log, no field schema or no frames
    can be found; a partial result is never returned.
    """
    def report(pct, msg):
        if on_progress is not None:
            on_progress(pct, msg)

    buf = bytes(buf)
    report(5, "Searching for log start...")
    starts = find_log_starts(buf)
    if log_index < 0:
        raise BlackboxDecodeError(f"Invalid log index {log_index}")
    if log_index >= len(starts):
        raise BlackboxDecodeError(
            'No valid Blackbox log found in file. Expected "H Product:Blackbox" header marker.')
    if len(starts) > 1:
        log.info(f"File contains {len(starts)} logs, decoding log {log_index + 1}")

    report(10, "Parsing headers...")
    headers = parse_headers(buf, starts[log_index])
    if not headers.i_defs:
        raise BlackboxDecodeError(
            "No field definitions found in log headers. The file may be corrupted.")

    report(15, "Decoding frames...")
    decoder = BlackboxDecoder(headers)
    main_frames, slow_frames = decoder.decode(
        buf, lambda pct: report(15 + int(pct * 0.7), "Decoding frames..."),
        end=starts[log_index + 1] if log_index + 1 < len(starts) else None)
    errors = decoder.stats['errors']

    if not main_frames:
        msg = "No data frames could be decoded from the log."
        if errors > 0:
            msg += f" ({errors} frames had decode errors)"
        raise BlackboxDecodeError(msg)

    report(88, "Mapping frames...")
    field_index = build_field_index(headers)
    frames = [to_log_frame(values, field_index, n) for n, (_, values) in enumerate(main_frames)]

    report(92, "Normalizing timestamps...")
    offset = frames[0].time
    for frame in frames:
        frame.time -= offset

    duration = frames[-1].time / 1_000_000
    metadata = to_log_metadata(headers, len(frames), duration)

    if errors:
        log.warning(f"{errors} frames had decode errors and were skipped")
    log.debug(f"Decoded {decoder.stats['i_frames']} I + {decoder.stats['p_frames']} P frames, "
              f"{decoder.stats['s_frames']} slow, {decoder.stats['events']} events")

    report(100, "Complete!")
    return ParsedLog(frames, metadata, slow_frames, dict(decoder.stats))


def parse_bbl_file(filepath, on_progress=None, log_index=0):
    with open(filepath, "rb") as f:
        buf = f.read()
    return parse_bbl_buffer(buf, on_progress=on_progress, log_index=log_index)


def count_logs(buf):
    return len(find_log_starts(bytes(buf)))


# ─── Series Extraction ───────────────────────────────────────────────────────

def extract_axis_series(frames, field, axis):
    """numpy array of one axis quantity ("gyro_adc", "setpoint", "pid_sum", ...)."""
    return np.fromiter((getattr(f, field)[axis] for f in frames), dtype=np.float64, count=len(frames))


def frame_times(frames):
    return np.fromiter((f.time for f in frames), dtype=np.float64, count=len(frames))
