"""
Import of Betaflight CLI output (`get`, `dump`, `diff all`) as current values.

Imported values go through a pending → accepted flow: a fresh import is held
as pending until accepted, so a bad paste never replaces what is in use.
"""

import logging
import math
import re

from bf_cli_export import cli_ranges, get_cli_name

log = logging.getLogger("settings")

# `get` output lines that are not settings
NOISE_PATTERN = re.compile(
    r"^\s*(#|Allowed range:|Default value:|Array length:|Permitted values:)", re.IGNORECASE)

# "p_roll = 45" (get) and "set p_roll = 45" (dump / diff all)
SETTING_PATTERN = re.compile(r"^\s*(?:set\s+)?([a-z_][a-z0-9_]*)\s*=\s*(.+)$", re.IGNORECASE)

_RANGES = cli_ranges()


class ParsedSettings:
    def __init__(self, values, warnings, parsed_count):
        self.values = values
        self.warnings = warnings
        self.parsed_count = parsed_count

    def __repr__(self):
        return f"<ParsedSettings {self.parsed_count} values, {len(self.warnings)} warnings>"


def _parse_number(text):
    try:
        return int(text)
    except ValueError:
        pass
    try:
        value = float(text)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_betaflight_output(text):
    """Numeric settings from CLI output. Enums, strings and arrays are skipped."""
    values = {}
    warnings = []
    parsed = 0

    for line in text.splitlines():
        line = line.strip()
        if not line or NOISE_PATTERN.match(line):
            continue
        m = SETTING_PATTERN.match(line)
        if not m:
            continue

        name = m.group(1).lower()
        num = _parse_number(m.group(2).strip())
        if num is None:
            continue

        bounds = _RANGES.get(name)
        if bounds and not (bounds[0] <= num <= bounds[1]):
            msg = f"{name} = {num} is outside allowed range [{bounds[0]}, {bounds[1]}]"
            log.warning(msg)
            warnings.append(msg)
            continue

        values[name] = num
        parsed += 1

    return ParsedSettings(values, warnings, parsed)


class ImportedSettings:
    """CLI name → value for settings read back from the flight controller."""

    def __init__(self):
        self.imported_values = {}
        self.baseline_values = {}
        self.pending_values = {}
        self.last_parse_result = None
        self.pending_parse_result = None
        self.last_cli_text = ""
        self.pending_cli_text = ""

    @property
    def has_pending(self):
        return bool(self.pending_values)

    @property
    def imported_count(self):
        return len(self.imported_values)

    def import_cli_output(self, text):
        result = parse_betaflight_output(text)
        self.pending_values.update(result.values)
        self.pending_parse_result = result
        self.pending_cli_text = text
        log.info(f"Imported {result.parsed_count} settings pending review")
        return result

    def accept_pending(self):
        self.imported_values.update(self.pending_values)
        self.baseline_values = dict(self.imported_values)
        self.last_parse_result = self.pending_parse_result
        self.last_cli_text = self.pending_cli_text or self.cli_text()
        self.dismiss_pending()

    def dismiss_pending(self):
        self.pending_values = {}
        self.pending_cli_text = ""
        self.pending_parse_result = None

    def accept_resolved_values(self, resolved):
        """Adopt exported targets as current values. The baseline is kept."""
        self.imported_values.update(resolved)
        self.last_cli_text = self.cli_text()

    def get_value(self, parameter, axis=None):
        return self.imported_values.get(get_cli_name(parameter, axis))

    def reset(self):
        self.__init__()

    def cli_text(self):
        return "\n".join(f"set {k} = {v}" for k, v in self.imported_values.items())


def load_settings_file(filepath):
    """ImportedSettings with the file's values already accepted."""
    with open(filepath) as f:
        text = f.read()
    settings = ImportedSettings()
    settings.import_cli_output(text)
    settings.accept_pending()
    return settings
