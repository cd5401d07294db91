"""
Gyro spectrum analysis: averaged magnitude spectra and dominant peaks.

Segments of SEGMENT_SIZE samples with 50% overlap are mean-removed, Hann
windowed and transformed; the per-segment magnitudes are averaged. Signals
shorter than one segment get a single zero-padded FFT instead.
"""

import logging

import numpy as np
from scipy import signal
from scipy.fft import rfft

from bf_blackbox_decoder import AXES, extract_axis_series, frame_times

log = logging.getLogger("spectrum")

# ─── Constants ────────────────────────────────────────────────────────────────

SEGMENT_SIZE = 2048
MAX_SAMPLES = 32768
MIN_SAMPLES = 64
TOP_PEAKS = 5
MIN_PEAK_HZ = 5
DISPLAY_THRESHOLD_RATIO = 0.02
DISPLAY_MARGIN = 1.3
MIN_DISPLAY_HZ = 300
DEFAULT_SAMPLE_RATE = 1000.0

LOW_BAND_HZ = 30
MID_BAND_HZ = 150


def band_energy(frequencies, magnitudes):
    """Sum of squared magnitudes in the low (<30 Hz), mid (<150 Hz) and high bands."""
    energy = np.asarray(magnitudes) ** 2
    frequencies = np.asarray(frequencies)
    low = frequencies < LOW_BAND_HZ
    mid = (frequencies >= LOW_BAND_HZ) & (frequencies < MID_BAND_HZ)
    high = frequencies >= MID_BAND_HZ
    return {"low": float(energy[low].sum()), "mid": float(energy[mid].sum()),
            "high": float(energy[high].sum())}


class SpectralPeak:
    def __init__(self, frequency, magnitude, bin_index):
        self.frequency = frequency
        self.magnitude = magnitude
        self.bin_index = bin_index

    def to_dict(self):
        return {"frequency": self.frequency, "magnitude": self.magnitude}

    def __eq__(self, other):
        return (isinstance(other, SpectralPeak) and self.bin_index == other.bin_index
                and self.frequency == other.frequency and self.magnitude == other.magnitude)

    def __repr__(self):
        return f"<SpectralPeak {self.frequency:.1f}Hz mag={self.magnitude:.3f}>"


class Spectrum:
    """Averaged spectrum of one signal. Arrays are read-only."""

    def __init__(self, frequencies, magnitudes, peaks, segments=0):
        self.frequencies = frequencies
        self.magnitudes = magnitudes
        self.peaks = peaks
        self.segments = segments
        for arr in (self.frequencies, self.magnitudes):
            arr.setflags(write=False)

    @property
    def empty(self):
        return len(self.frequencies) == 0

    def band_energy(self):
        return band_energy(self.frequencies, self.magnitudes)

    def dominant(self):
        """(frequency, magnitude) of the strongest non-DC bin."""
        if len(self.magnitudes) < 2:
            return 0.0, 0.0
        i = int(np.argmax(self.magnitudes[1:])) + 1
        return float(self.frequencies[i]), float(self.magnitudes[i])


def _empty_spectrum():
    return Spectrum(np.zeros(0), np.zeros(0), [])


# ─── Sample Rate ─────────────────────────────────────────────────────────────

def derive_sample_rate(times_us):
    """Logging rate in Hz from frame timestamps (µs), using the median interval.

    A single gap from a logging pause or a dropped frame leaves the result
    unchanged. Falls back to 1000 Hz when no positive interval exists.
    """
    times = np.asarray(times_us, dtype=np.float64)
    if len(times) < 2:
        return DEFAULT_SAMPLE_RATE
    diffs = np.diff(times)
    diffs = diffs[diffs > 0]
    if len(diffs) == 0:
        return DEFAULT_SAMPLE_RATE
    return 1_000_000.0 / float(np.median(diffs))


# ─── FFT ─────────────────────────────────────────────────────────────────────

def _next_pow2(n):
    return 1 << max(0, int(np.ceil(np.log2(max(n, 1)))))


def _segment_magnitudes(segment):
    n = len(segment)
    centered = segment - segment.mean()
    windowed = centered * np.hanning(n)
    # Hann coherent gain is 0.5, hence × 2
    return np.abs(rfft(windowed))[:n // 2] / n * 2


def find_spectral_peaks(frequencies, magnitudes, top_n=TOP_PEAKS,
                        min_frequency=MIN_PEAK_HZ, max_frequency=np.inf):
    """Strict local maxima within [min_frequency, max_frequency], strongest first."""
    if len(magnitudes) < 3:
        return []
    idx, _ = signal.find_peaks(magnitudes, plateau_size=(1, 1))
    idx = [i for i in idx if min_frequency <= frequencies[i] <= max_frequency]
    # Stable sort keeps lower bins first on equal magnitude
    idx.sort(key=lambda i: -magnitudes[i])
    return [SpectralPeak(float(frequencies[i]), float(magnitudes[i]), int(i)) for i in idx[:top_n]]


def compute_averaged_spectrum(samples, sample_rate):
    """Averaged magnitude spectrum of one signal.

    Only the first MAX_SAMPLES samples are used. Returns an empty Spectrum for
    fewer than MIN_SAMPLES samples or a non-positive sample rate.
    """
    x = np.asarray(samples, dtype=np.float64)
    if len(x) < MIN_SAMPLES or sample_rate <= 0:
        return _empty_spectrum()
    x = np.where(np.isfinite(x), x, 0.0)[:MAX_SAMPLES]

    hop = SEGMENT_SIZE // 2
    starts = range(0, len(x) - SEGMENT_SIZE + 1, hop)

    if len(starts) == 0:
        size = _next_pow2(min(len(x), SEGMENT_SIZE))
        padded = np.zeros(size)
        padded[:min(len(x), size)] = x[:size]
        magnitudes = _segment_magnitudes(padded)
        segments = 1
    else:
        size = SEGMENT_SIZE
        magnitudes = np.mean([_segment_magnitudes(x[s:s + SEGMENT_SIZE]) for s in starts], axis=0)
        segments = len(starts)

    frequencies = np.arange(size // 2) * sample_rate / size
    peaks = find_spectral_peaks(frequencies, magnitudes)
    log.debug(f"Spectrum: {len(x)} samples, {segments} segment(s), {len(peaks)} peaks")
    return Spectrum(frequencies, magnitudes, peaks, segments)


# ─── Display Range ───────────────────────────────────────────────────────────

class SpectrumView:
    """Spectrum trimmed to its meaningful frequency range for display."""

    def __init__(self, frequencies, magnitudes, peaks, max_magnitude, display_max,
                 nyquist, frame_count, sample_rate):
        self.frequencies = frequencies
        self.magnitudes = magnitudes
        self.peaks = peaks
        self.max_magnitude = max_magnitude
        self.display_max = display_max
        self.nyquist = nyquist
        self.frame_count = frame_count
        self.sample_rate = sample_rate

    @property
    def empty(self):
        return len(self.frequencies) == 0

    def band_energy(self):
        """Band energy of the displayed range."""
        return band_energy(self.frequencies, self.magnitudes)

    def points(self):
        return [{"frequency": float(f), "magnitude": float(m)}
                for f, m in zip(self.frequencies, self.magnitudes)]

    def to_dict(self):
        return {
            "peaks": [p.to_dict() for p in self.peaks],
            "max_magnitude": self.max_magnitude,
            "display_max": self.display_max,
            "nyquist": self.nyquist,
            "frame_count": self.frame_count,
            "sample_rate": self.sample_rate,
            "band_energy": self.band_energy(),
        }


def display_ceiling(frequencies, magnitudes, nyquist):
    """Returns (display_max, max_magnitude).

    The ceiling is the last bin above 2% of the peak magnitude (up to Nyquist),
    plus 30%, capped at Nyquist and never below MIN_DISPLAY_HZ.
    """
    in_range = frequencies <= nyquist
    if not np.any(in_range):
        return float(MIN_DISPLAY_HZ), 0.0
    max_mag = float(magnitudes[in_range].max())
    significant = np.nonzero(in_range & (magnitudes > max_mag * DISPLAY_THRESHOLD_RATIO))[0]
    last_freq = float(frequencies[significant[-1]]) if len(significant) else 0.0
    return max(float(MIN_DISPLAY_HZ), min(last_freq * DISPLAY_MARGIN, nyquist)), max_mag


def empty_view():
    return SpectrumView(np.zeros(0), np.zeros(0), [], 0.0, 0.0, 0.0, 0, 0.0)


def spectrum_view(frames, axis, field="gyro_adc"):
    """Gyro spectrum of one axis over the whole log, cut at the display ceiling."""
    if len(frames) < MIN_SAMPLES:
        return empty_view()
    sample_rate = derive_sample_rate(frame_times(frames))
    spec = compute_averaged_spectrum(extract_axis_series(frames, field, axis), sample_rate)
    if spec.empty:
        return empty_view()

    nyquist = sample_rate / 2
    display_max, max_mag = display_ceiling(spec.frequencies, spec.magnitudes, nyquist)
    keep = spec.frequencies <= display_max
    return SpectrumView(
        spec.frequencies[keep], spec.magnitudes[keep],
        [p for p in spec.peaks if p.frequency <= display_max],
        max_mag, display_max, nyquist, len(frames), sample_rate,
    )


# ─── Cache ───────────────────────────────────────────────────────────────────

class SpectrumCache:
    """Memoizes spectrum_view per (frame list, axis) for one analysis session.

    The frame list is keyed by identity. Passing a different list drops every
    entry computed for the previous one.
    """

    def __init__(self):
        self._frames = None
        self._views = {}
        self.hits = 0
        self.misses = 0

    def get(self, frames, axis, field="gyro_adc"):
        if frames is not self._frames:
            self._frames = frames
            self._views = {}
        key = (axis, field)
        view = self._views.get(key)
        if view is None:
            self.misses += 1
            view = spectrum_view(frames, axis, field)
            self._views[key] = view
        else:
            self.hits += 1
        return view

    def clear(self):
        self._frames = None
        self._views = {}

    def all_axes(self, frames):
        return {axis: self.get(frames, axis) for axis in AXES}
