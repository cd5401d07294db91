"""
Betaflight CLI export: parameter table, change grammar, value resolution.

A recommended change is one of three grammars:
    "+5%"   percentage of the current value
    "+0.3"  relative (scale factor for per-axis PID gains, additive otherwise)
    "32"    absolute target
Percentage and relative changes need the current value. It comes from the
change itself, else from the log headers, else from settings imported from
the flight controller CLI. Changes that cannot be resolved are exported as
comment lines, never as errors.
"""

import logging
import math
import re
from enum import Enum

from bf_analysis_model import AXES

log = logging.getLogger("cli_export")


# ─── Parameters ──────────────────────────────────────────────────────────────

class Parameter(Enum):
    P_GAIN = "pidPGain"
    I_GAIN = "pidIGain"
    D_GAIN = "pidDGain"
    D_MIN = "pidDMinGain"
    FEEDFORWARD = "pidFeedforward"
    MASTER_MULTIPLIER = "pidMasterMultiplier"
    GYRO_FILTER_MULTIPLIER = "gyroFilterMultiplier"
    DTERM_FILTER_MULTIPLIER = "dtermFilterMultiplier"
    DYN_NOTCH_COUNT = "dynamicNotchCount"
    DYN_NOTCH_Q = "dynamicNotchQ"
    DYN_NOTCH_MIN_HZ = "dynamicNotchMinHz"
    DYN_NOTCH_MAX_HZ = "dynamicNotchMaxHz"
    RPM_FILTER_HARMONICS = "rpmFilterHarmonics"
    RPM_FILTER_MIN_HZ = "rpmFilterMinHz"
    FF_TRANSITION = "feedforwardTransition"
    FF_JITTER_FACTOR = "feedforwardJitterFactor"
    FF_SMOOTH_FACTOR = "feedforwardSmoothFactor"
    DYNAMIC_IDLE = "dynamicIdle"
    TPA_RATE = "tpaRate"
    TPA_BREAKPOINT = "tpaBreakpoint"
    ITERM_RELAX_CUTOFF = "itermRelaxCutoff"

    @classmethod
    def from_id(cls, value):
        """Parameter for an external id ("pidPGain"), None when unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class ParamSpec:
    """CLI name (or per-axis prefix), valid range and where the log keeps it.

    source is (attribute holder, attribute): "pid" for PidProfile, "filter"
    for FilterSettings, None when blackbox headers never carry the value.
    Per-axis attributes are formatted with the axis name.
    """

    __slots__ = ("cli", "per_axis", "min", "max", "label", "source")

    def __init__(self, cli, per_axis, lo, hi, label, source=None):
        self.cli = cli
        self.per_axis = per_axis
        self.min = lo
        self.max = hi
        self.label = label
        self.source = source


PARAMETERS = {
    Parameter.P_GAIN: ParamSpec("p", True, 0, 250, "P gain", ("pid", "{}_p")),
    Parameter.I_GAIN: ParamSpec("i", True, 0, 250, "I gain", ("pid", "{}_i")),
    Parameter.D_GAIN: ParamSpec("d", True, 0, 250, "D gain", ("pid", "{}_d")),
    Parameter.D_MIN: ParamSpec("d_min", True, 0, 250, "D-min", ("pid", "{}_d_min")),
    Parameter.FEEDFORWARD: ParamSpec("f", True, 0, 1000, "Feedforward", ("pid", "{}_ff")),
    Parameter.MASTER_MULTIPLIER: ParamSpec(
        "simplified_master_multiplier", False, 0, 200, "Master multiplier",
        ("pid", "master_multiplier")),
    Parameter.GYRO_FILTER_MULTIPLIER: ParamSpec(
        "simplified_gyro_filter_multiplier", False, 10, 200, "Gyro filter multiplier",
        ("filter", "gyro_filter_multiplier")),
    Parameter.DTERM_FILTER_MULTIPLIER: ParamSpec(
        "simplified_dterm_filter_multiplier", False, 10, 200, "D-term filter multiplier",
        ("filter", "dterm_filter_multiplier")),
    Parameter.DYN_NOTCH_COUNT: ParamSpec(
        "dyn_notch_count", False, 0, 5, "Dynamic notch count", ("filter", "dynamic_notch_count")),
    Parameter.DYN_NOTCH_Q: ParamSpec(
        "dyn_notch_q", False, 1, 1000, "Dynamic notch Q", ("filter", "dynamic_notch_q")),
    Parameter.DYN_NOTCH_MIN_HZ: ParamSpec(
        "dyn_notch_min_hz", False, 20, 250, "Dynamic notch min Hz",
        ("filter", "dynamic_notch_min_hz")),
    Parameter.DYN_NOTCH_MAX_HZ: ParamSpec(
        "dyn_notch_max_hz", False, 200, 1000, "Dynamic notch max Hz",
        ("filter", "dynamic_notch_max_hz")),
    Parameter.RPM_FILTER_HARMONICS: ParamSpec(
        "rpm_filter_harmonics", False, 0, 3, "RPM filter harmonics",
        ("filter", "rpm_filter_harmonics")),
    Parameter.RPM_FILTER_MIN_HZ: ParamSpec(
        "rpm_filter_min_hz", False, 30, 200, "RPM filter min Hz", ("filter", "rpm_filter_min_hz")),
    Parameter.FF_TRANSITION: ParamSpec(
        "feedforward_transition", False, 0, 100, "Feedforward transition"),
    Parameter.FF_JITTER_FACTOR: ParamSpec(
        "feedforward_jitter_factor", False, 0, 20, "Feedforward jitter factor"),
    Parameter.FF_SMOOTH_FACTOR: ParamSpec(
        "feedforward_smooth_factor", False, 0, 95, "Feedforward smoothing"),
    Parameter.DYNAMIC_IDLE: ParamSpec(
        "dshot_idle_value", False, 0, 2000, "Dynamic idle", ("pid", "dynamic_idle")),
    Parameter.TPA_RATE: ParamSpec("tpa_rate", False, 0, 100, "TPA rate", ("pid", "tpa_rate")),
    Parameter.TPA_BREAKPOINT: ParamSpec(
        "tpa_breakpoint", False, 1000, 2000, "TPA breakpoint", ("pid", "tpa_breakpoint")),
    Parameter.ITERM_RELAX_CUTOFF: ParamSpec(
        "iterm_relax_cutoff", False, 1, 50, "I-term relax cutoff", ("filter", "iterm_relax_cutoff")),
}


def param_spec(parameter):
    p = Parameter.from_id(parameter)
    return PARAMETERS[p] if p is not None else None


def is_per_axis(parameter):
    spec = param_spec(parameter)
    return spec is not None and spec.per_axis


def parameter_label(parameter):
    spec = param_spec(parameter)
    if spec is None:
        return parameter.value if isinstance(parameter, Parameter) else str(parameter)
    return spec.label


def get_cli_name(parameter, axis=None):
    """CLI setting name: "p_roll", "dyn_notch_count", ... Unknown ids come back as-is."""
    spec = param_spec(parameter)
    if spec is None:
        return str(parameter)
    if spec.per_axis and axis:
        return f"{spec.cli}_{axis}"
    return spec.cli


def cli_ranges():
    """Valid range per CLI setting name, per-axis settings expanded."""
    ranges = {}
    for spec in PARAMETERS.values():
        names = [f"{spec.cli}_{a}" for a in AXES] if spec.per_axis else [spec.cli]
        for name in names:
            ranges[name] = (spec.min, spec.max)
    return ranges


def clamp(parameter, value):
    spec = param_spec(parameter)
    if spec is None or value is None:
        return value
    return max(spec.min, min(spec.max, value))


# ─── Change Grammar ──────────────────────────────────────────────────────────

_PCT_RE = re.compile(r"^([+-])(\d+(?:\.\d+)?)%$")
_REL_RE = re.compile(r"^([+-])(\d+(?:\.\d+)?)$")
_ABS_RE = re.compile(r"^(\d+(?:\.\d+)?)$")


class _SignedChange:
    needs_current = True

    def __init__(self, sign, amount):
        self.sign = sign
        self.amount = amount

    def __eq__(self, other):
        return type(other) is type(self) and (self.sign, self.amount) == (other.sign, other.amount)

    def __repr__(self):
        return f"{type(self).__name__}({'+' if self.sign > 0 else '-'}{self.amount})"


class Percentage(_SignedChange):
    """Signed percentage; amount is in percent (+5% → sign 1, amount 5.0)."""


class Relative(_SignedChange):
    """Signed delta; a scale factor for per-axis PID gains, additive otherwise."""


class Absolute:
    needs_current = False
    sign = 0

    def __init__(self, amount):
        self.amount = amount

    def __eq__(self, other):
        return type(other) is type(self) and self.amount == other.amount

    def __repr__(self):
        return f"Absolute({self.amount})"


def parse_change(text):
    """Percentage, Relative or Absolute for a change string; None when unparseable."""
    if not isinstance(text, str):
        return None
    s = text.strip()
    m = _PCT_RE.match(s)
    if m:
        return Percentage(1 if m.group(1) == "+" else -1, float(m.group(2)))
    m = _REL_RE.match(s)
    if m:
        return Relative(1 if m.group(1) == "+" else -1, float(m.group(2)))
    m = _ABS_RE.match(s)
    if m:
        return Absolute(float(m.group(1)))
    return None


def round_half_up(x):
    # Halves round toward +inf: 2.5 → 3, -2.5 → -2
    return int(math.floor(x + 0.5))


def resolve_change(recommended_change, current_value, is_per_axis_pid):
    """Target value for a change string. Returns (value, resolved).

    (None, False) when the string is unparseable or needs a current value
    that is not known. The value is not clamped here.
    """
    change = parse_change(recommended_change)
    if change is None:
        return None, False
    if isinstance(change, Absolute):
        return round_half_up(change.amount), True
    if current_value is None:
        return None, False
    if isinstance(change, Relative):
        if is_per_axis_pid:
            return round_half_up(current_value * (1 + change.sign * change.amount)), True
        return round_half_up(current_value + change.sign * change.amount), True
    return round_half_up(current_value * (1 + change.sign * change.amount / 100)), True


def resolve_clamped(parameter, recommended_change, current_value):
    value, resolved = resolve_change(recommended_change, current_value, is_per_axis(parameter))
    if not resolved:
        return None, False
    return clamp(parameter, value), True


# ─── Current Value Lookup ────────────────────────────────────────────────────

def get_pid_value(pid_profile, parameter, axis):
    spec = param_spec(parameter)
    if pid_profile is None or axis is None or spec is None or not spec.per_axis:
        return None
    return pid_profile.get(spec.source[1].format(axis))


def get_global_value(parameter, pid_profile=None, filter_settings=None):
    spec = param_spec(parameter)
    if spec is None or spec.per_axis or spec.source is None:
        return None
    holder, attr = spec.source
    snapshot = pid_profile if holder == "pid" else filter_settings
    return snapshot.get(attr) if snapshot is not None else None


def lookup_current_value(parameter, metadata, axis=None):
    """Current value of a parameter as recorded in the log headers, or None."""
    pid_value = get_pid_value(metadata.pid_profile, parameter, axis)
    if pid_value is not None:
        return pid_value
    return get_global_value(parameter, metadata.pid_profile, metadata.filter_settings)


class ValueSources:
    """Everything a current value can come from for one export run."""

    def __init__(self, pid_profile=None, filter_settings=None, imported=None):
        self.pid_profile = pid_profile
        self.filter_settings = filter_settings
        self.imported = imported or {}

    @classmethod
    def from_metadata(cls, metadata, imported=None):
        if metadata is None:
            return cls(imported=imported)
        return cls(metadata.pid_profile, metadata.filter_settings, imported)


def _explicit_value(change, axis, sources):
    return change.current_value


def _log_value(change, axis, sources):
    if is_per_axis(change.parameter):
        return get_pid_value(sources.pid_profile, change.parameter, axis)
    return get_global_value(change.parameter, sources.pid_profile, sources.filter_settings)


def _imported_value(change, axis, sources):
    if param_spec(change.parameter) is None:
        return None
    return sources.imported.get(get_cli_name(change.parameter, axis))


# Evaluated in order; the first non-None value wins
CURRENT_VALUE_STRATEGIES = (_explicit_value, _log_value, _imported_value)
LOG_VALUE_STRATEGIES = (_explicit_value, _log_value)


def current_value_for(change, axis, sources, strategies=CURRENT_VALUE_STRATEGIES):
    for strategy in strategies:
        value = strategy(change, axis, sources)
        if value is not None:
            return value
    return None


def with_current_value(change, metadata):
    """Copy of the change with current_value filled in from the log.

    The change itself is returned when it already has a value or the log
    does not know it.
    """
    if change.current_value is not None:
        return change
    current = lookup_current_value(change.parameter, metadata, change.axis)
    if current is None:
        return change
    return change.copy(current_value=current)


def populate_current_values(changes, metadata):
    return [with_current_value(c, metadata) for c in changes]


def change_axes(change):
    """Axes a change applies to: its own axis, all three for axis-less PID gains, else [None]."""
    if is_per_axis(change.parameter):
        return [change.axis] if change.axis else list(AXES)
    return [None]


# ─── Settings Checks ─────────────────────────────────────────────────────────

def is_rpm_filter_enabled(metadata):
    fs = metadata.filter_settings
    h = fs.rpm_filter_harmonics if fs is not None else None
    return h is not None and h >= 1


def is_d_gain_zero(metadata, axis):
    return get_pid_value(metadata.pid_profile, Parameter.D_GAIN, axis) == 0


def is_ff_zero(metadata, axis):
    return get_pid_value(metadata.pid_profile, Parameter.FEEDFORWARD, axis) == 0


# ─── CLI Generation ──────────────────────────────────────────────────────────

CLI_HEADER = [
    "# Betaflight Tuning Helper - CLI Commands",
    "# Paste these commands into the Betaflight CLI tab",
    "",
]

GET_SCRIPT_HEADER = "# Paste into Betaflight CLI, then copy the output back"


def is_noop_change(change, sources):
    """True when the clamped target equals the current value on every axis."""
    if param_spec(change.parameter) is None:
        return False
    for axis in change_axes(change):
        current = current_value_for(change, axis, sources)
        value, resolved = resolve_clamped(change.parameter, change.recommended_change, current)
        if not resolved or value != current:
            return False
    return True


def generate_set_lines(change, sources):
    """CLI lines for one change: set commands or commented placeholders."""
    spec = param_spec(change.parameter)
    param = change.parameter.value if isinstance(change.parameter, Parameter) else change.parameter
    if spec is None:
        return [f"# {param}: {change.recommended_change} (unknown CLI mapping)"]

    lines = []
    for axis in change_axes(change):
        current = current_value_for(change, axis, sources)
        value, resolved = resolve_clamped(change.parameter, change.recommended_change, current)
        if resolved:
            lines.append(f"set {get_cli_name(change.parameter, axis)} = {value}")
            continue
        where = f"{param}[{axis}]" if axis else param
        log.debug(f"Unresolved change {where}: {change.recommended_change}")
        lines.append(f"# {where}: {change.recommended_change} (current value unknown)")
    return lines


def generate_cli_commands(recommendations, pid_profile=None, filter_settings=None, imported=None):
    """CLI script for a recommendation set, always ending with "save"."""
    sources = ValueSources(pid_profile, filter_settings, imported)
    lines = list(CLI_HEADER)

    for rec in recommendations:
        changes = [c for c in rec.changes if not is_noop_change(c, sources)]
        if rec.changes and not changes:
            continue
        lines.append(f"# Recommendation: {rec.title}")
        for change in changes:
            lines.extend(generate_set_lines(change, sources))
        lines.append("")

    lines.append("save")
    return "\n".join(lines)


def needed_cli_names(recommendations, pid_profile=None, filter_settings=None):
    """CLI names the recommendations reference that the log does not provide.

    Imported values are not consulted, so the get script always refreshes them.
    """
    sources = ValueSources(pid_profile, filter_settings)
    needed = set()
    for rec in recommendations:
        for change in rec.changes:
            if param_spec(change.parameter) is None:
                continue
            for axis in change_axes(change):
                if current_value_for(change, axis, sources, LOG_VALUE_STRATEGIES) is None:
                    needed.add(get_cli_name(change.parameter, axis))
    return sorted(needed)


def generate_get_script(recommendations, pid_profile=None, filter_settings=None):
    """`get` commands for every needed setting, or "" when nothing is missing."""
    names = needed_cli_names(recommendations, pid_profile, filter_settings)
    if not names:
        return ""
    return "\n".join([GET_SCRIPT_HEADER, ""] + [f"get {name}" for name in names])


def collect_resolved_values(recommendations, pid_profile=None, filter_settings=None, imported=None):
    """CLI name → clamped target for every change that resolves."""
    sources = ValueSources(pid_profile, filter_settings, imported)
    resolved = {}
    for rec in recommendations:
        for change in rec.changes:
            if param_spec(change.parameter) is None:
                continue
            for axis in change_axes(change):
                current = current_value_for(change, axis, sources)
                value, ok = resolve_clamped(change.parameter, change.recommended_change, current)
                if ok:
                    resolved[get_cli_name(change.parameter, axis)] = value
    return resolved
