"""Synthetic blackbox logs and analysis-model factories shared by the tests."""

import math

import pytest

from bf_analysis_model import DetectedIssue, ParameterChange, Recommendation
from bf_blackbox_decoder import FilterSettings, LogFrame, LogMetadata, PidProfile


# ─── Encoders ────────────────────────────────────────────────────────────────

def uvb(n):
    out = bytearray()
    while n >= 0x80:
        out.append((n & 0x7F) | 0x80)
        n >>= 7
    out.append(n)
    return bytes(out)


def zigzag(n):
    return n << 1 if n >= 0 else ((-n) << 1) - 1


def svb(n):
    return uvb(zigzag(n))


# ─── Log Builder ─────────────────────────────────────────────────────────────

MAIN_FIELDS = [
    "loopIteration", "time",
    "axisP[0]", "axisP[1]", "axisP[2]",
    "axisI[0]", "axisI[1]", "axisI[2]",
    "axisD[0]", "axisD[1]", "axisD[2]",
    "rcCommand[0]", "rcCommand[1]", "rcCommand[2]", "rcCommand[3]",
    "setpoint[0]", "setpoint[1]", "setpoint[2]",
    "gyroADC[0]", "gyroADC[1]", "gyroADC[2]",
    "motor[0]", "motor[1]", "motor[2]", "motor[3]",
]

DEFAULT_HEADERS = [
    ("Data version", "2"),
    ("I interval", "32"),
    ("P interval", "1/2"),
    ("Firmware type", "Cleanflight"),
    ("Firmware revision", "Betaflight 4.4.2 (3ba6f6d) STM32F7X2"),
    ("Firmware date", "Jun  1 2023 10:00:00"),
    ("Craft name", "TestQuad"),
    ("looptime", "125"),
    ("minthrottle", "1070"),
    ("vbatref", "420"),
    ("motorOutput", "48,2047"),
    ("debug_mode", "6"),
    ("rollPID", "45,80,40"),
    ("pitchPID", "47,84,46"),
    ("yawPID", "45,80,0"),
    ("d_min", "30,34,0"),
    ("ff_weight", "120,125,120"),
    ("simplified_master_multiplier", "100"),
    ("tpa_rate", "65"),
    ("tpa_breakpoint", "1350"),
    ("gyro_lpf1_static_hz", "250"),
    ("dterm_lpf1_static_hz", "75"),
    ("dyn_notch_count", "3"),
    ("dyn_notch_q", "300"),
    ("dyn_notch_min_hz", "100"),
    ("dyn_notch_max_hz", "600"),
    ("rpm_filter_harmonics", "3"),
    ("rpm_filter_min_hz", "100"),
]


class BblBuilder:
    """Writes a log whose frames are given as absolute values.

    I-frames use predictor ZERO. P-frames support ZERO, PREVIOUS and INC;
    encodings 0 (signed VB), 1 (unsigned VB) and 9 (NULL).
    """

    def __init__(self, fields=None, headers=None, i_signed=None, i_pred=None, i_enc=None,
                 p_pred=None, p_enc=None, field_header="Field I name"):
        self.fields = list(fields or MAIN_FIELDS)
        n = len(self.fields)
        self.headers = list(DEFAULT_HEADERS if headers is None else headers)
        self.i_signed = i_signed or [0, 0] + [1] * (n - 2)
        self.i_pred = i_pred or [0] * n
        self.i_enc = i_enc or [1, 1] + [0] * (n - 2)
        self.p_pred = p_pred or [6, 1] + [1] * (n - 2)
        self.p_enc = p_enc or [9, 0] + [0] * (n - 2)
        self.field_header = field_header
        self.body = bytearray()
        self.previous = None

    def values(self, **named):
        row = [0] * len(self.fields)
        for name, value in named.items():
            row[self.fields.index(name)] = value
        return row

    def header_bytes(self):
        lines = ["H Product:Blackbox flight data recorder by Nicholas Sherlock"]
        lines.append(f"H {self.field_header}:{','.join(self.fields)}")
        lines.append(f"H Field I signed:{','.join(map(str, self.i_signed))}")
        lines.append(f"H Field I predictor:{','.join(map(str, self.i_pred))}")
        lines.append(f"H Field I encoding:{','.join(map(str, self.i_enc))}")
        lines.append(f"H Field P predictor:{','.join(map(str, self.p_pred))}")
        lines.append(f"H Field P encoding:{','.join(map(str, self.p_enc))}")
        lines.extend(f"H {k}:{v}" for k, v in self.headers)
        return ("\n".join(lines) + "\n").encode("latin-1")

    @staticmethod
    def _encode(value, enc):
        if enc == 1:
            return uvb(value)
        if enc == 9:
            return b""
        return svb(value)

    def add_i(self, row):
        self.body += b"I"
        for value, enc in zip(row, self.i_enc):
            self.body += self._encode(value, enc)
        self.previous = list(row)
        return self

    def add_p(self, row):
        self.body += b"P"
        for i, (value, pred, enc) in enumerate(zip(row, self.p_pred, self.p_enc)):
            if pred == 6:
                continue
            residual = value - self.previous[i] if pred == 1 else value
            self.body += self._encode(residual, enc)
        self.previous = list(row)
        return self

    def add_raw(self, data):
        self.body += data
        return self

    def add_log_end(self):
        self.body += b"E\xffEnd of log\x00"
        return self

    def build(self):
        return self.header_bytes() + bytes(self.body)


def sample_row(builder, n, time_offset=5_000_000, gyro=None):
    """Deterministic frame n: 250 µs spacing, small PID/gyro variation."""
    g = gyro(n) if gyro else (n % 7 - 3, 2 * (n % 5) - 4, n % 3)
    return builder.values(**{
        "loopIteration": n, "time": time_offset + n * 250,
        "axisP[0]": 10 + n % 4, "axisP[1]": -5, "axisP[2]": 3,
        "axisI[0]": 20, "axisI[1]": 21, "axisI[2]": 22,
        "axisD[0]": -(n % 6), "axisD[1]": 4, "axisD[2]": 0,
        "rcCommand[0]": 12, "rcCommand[1]": -8, "rcCommand[2]": 0, "rcCommand[3]": 1400 + n % 50,
        "setpoint[0]": 30, "setpoint[1]": 0, "setpoint[2]": -15,
        "gyroADC[0]": g[0], "gyroADC[1]": g[1], "gyroADC[2]": g[2],
        "motor[0]": 1200 + n % 10, "motor[1]": 1210, "motor[2]": 1190 + n % 3, "motor[3]": 1205,
    })


def build_log(n_frames=40, i_interval=32, headers=None, gyro=None, log_end=True):
    """Returns (bytes, rows): one I-frame every i_interval frames, P-frames between."""
    b = BblBuilder(headers=headers)
    rows = []
    for n in range(n_frames):
        row = sample_row(b, n, gyro=gyro)
        rows.append(row)
        if n % i_interval == 0:
            b.add_i(row)
        else:
            b.add_p(row)
    if log_end:
        b.add_log_end()
    return b.build(), rows


def sine_gyro(freq_hz, rate_hz=4000.0, amplitude=200):
    def gyro(n):
        v = int(round(amplitude * math.sin(2 * math.pi * freq_hz * n / rate_hz)))
        return (v, v // 2, 0)
    return gyro


@pytest.fixture
def builder():
    return BblBuilder()


@pytest.fixture
def simple_log():
    return build_log()


# ─── Frame / Metadata Factories ──────────────────────────────────────────────

def make_frames(roll, dt_us=1000):
    frames = []
    for n, value in enumerate(roll):
        axes = {"roll": value, "pitch": 0, "yaw": 0}
        zero = {"roll": 0, "pitch": 0, "yaw": 0}
        frames.append(LogFrame(
            time=n * dt_us, loop_iteration=n, gyro_adc=axes, setpoint=dict(zero),
            pid_p=dict(zero), pid_i=dict(zero), pid_d=dict(zero), pid_sum=dict(zero),
            motor=[1000, 1000, 1000, 1000],
            rc_command={"roll": 0, "pitch": 0, "yaw": 0, "throttle": 1000}, throttle=1000,
        ))
    return frames


def make_pid_profile(**overrides):
    values = dict(roll_p=45, roll_i=80, roll_d=40, pitch_p=47, pitch_i=84, pitch_d=46,
                  yaw_p=45, yaw_i=80, yaw_d=0, roll_d_min=30, pitch_d_min=34,
                  roll_ff=120, pitch_ff=125, yaw_ff=120, master_multiplier=100)
    values.update(overrides)
    return PidProfile(**values)


def make_filter_settings(**overrides):
    values = dict(gyro_lpf1_cutoff=250, dterm_lpf1_cutoff=75, dynamic_notch_count=3,
                  dynamic_notch_q=300, dynamic_notch_min_hz=100, dynamic_notch_max_hz=600,
                  rpm_filter_harmonics=3, rpm_filter_min_hz=100)
    values.update(overrides)
    return FilterSettings(**values)


def make_metadata(pid_profile=None, filter_settings=None):
    return LogMetadata(
        firmware_type="Cleanflight", firmware_version="Betaflight 4.4.2", firmware_revision=None,
        looptime=4000.0, gyro_rate=8000.0, motor_count=4, field_names=list(MAIN_FIELDS),
        pid_profile=pid_profile, filter_settings=filter_settings,
    )


# ─── Issue / Recommendation Factories ────────────────────────────────────────

def make_issue(id, type="propwash", axis="roll", severity="medium", confidence=0.8):
    return DetectedIssue(id=id, type=type, severity=severity, axis=axis,
                         time_range=(0, 1000), confidence=confidence)


def make_change(parameter="pidDGain", change="+0.3", axis="roll", current=None):
    return ParameterChange(parameter=parameter, recommended_change=change, axis=axis,
                           current_value=current)


def make_rec(id, issue_id=None, title=None, changes=(), priority=5, confidence=0.8,
             related=None):
    return Recommendation(id=id, issue_id=issue_id or f"issue-{id}", title=title or f"Rec {id}",
                          priority=priority, confidence=confidence, changes=list(changes),
                          related_issue_ids=related)
