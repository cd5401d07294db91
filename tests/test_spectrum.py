import numpy as np
import pytest

from bf_blackbox_decoder import parse_bbl_buffer
from bf_spectrum import (
    MAX_SAMPLES, MIN_DISPLAY_HZ, SpectrumCache, band_energy, compute_averaged_spectrum,
    derive_sample_rate, display_ceiling, find_spectral_peaks, spectrum_view,
)

from conftest import build_log, make_frames, sine_gyro


def _sine(freq, rate, n, amplitude=1.0, offset=0.0):
    t = np.arange(n) / rate
    return offset + amplitude * np.sin(2 * np.pi * freq * t)


# ─── Sample Rate ─────────────────────────────────────────────────────────────

def test_sample_rate_from_median_interval():
    times = list(range(0, 100_000, 1000))
    times.append(times[-1] + 50_000)  # logging pause
    assert derive_sample_rate(times) == pytest.approx(1000.0)


def test_sample_rate_fallback():
    assert derive_sample_rate([]) == 1000.0
    assert derive_sample_rate([5]) == 1000.0
    assert derive_sample_rate([7, 7, 7]) == 1000.0


# ─── Averaged Spectrum ───────────────────────────────────────────────────────

def test_sine_peak_on_bin():
    rate = 1000.0
    freq = 205 * rate / 2048   # exactly on a bin
    spec = compute_averaged_spectrum(_sine(freq, rate, 8192, amplitude=3.0), rate)

    top = spec.peaks[0]
    assert top.frequency == pytest.approx(freq)
    assert top.bin_index == 205
    assert top.magnitude == pytest.approx(1.5, rel=0.05)  # Hann window halves the amplitude
    assert len(spec.frequencies) == 1024


def test_segment_count_and_sample_cap():
    spec = compute_averaged_spectrum(np.random.default_rng(1).normal(size=40_000), 1000.0)
    assert spec.segments == (MAX_SAMPLES - 2048) // 1024 + 1


def test_short_signal_is_zero_padded():
    spec = compute_averaged_spectrum(_sine(50, 1000.0, 500), 1000.0)
    assert spec.segments == 1
    assert len(spec.frequencies) == 256
    assert spec.frequencies[1] == pytest.approx(1000.0 / 512)


def test_too_few_samples_or_bad_rate():
    assert compute_averaged_spectrum(np.ones(63), 1000.0).empty
    assert compute_averaged_spectrum(np.ones(4096), 0).empty


def test_dc_offset_removed():
    spec = compute_averaged_spectrum(_sine(100, 1000.0, 4096, offset=500.0), 1000.0)
    assert spec.magnitudes[0] < 0.01
    assert spec.dominant()[0] == pytest.approx(100, abs=1)


def test_spectrum_arrays_read_only():
    spec = compute_averaged_spectrum(_sine(100, 1000.0, 4096), 1000.0)
    with pytest.raises(ValueError):
        spec.magnitudes[0] = 1.0


def test_peaks_sorted_and_limited():
    rate = 1000.0
    x = sum(_sine(f, rate, 8192, amplitude=a)
            for f, a in [(40, 1), (90, 5), (150, 3), (210, 2), (300, 4), (420, 0.5)])
    spec = compute_averaged_spectrum(x, rate)
    mags = [p.magnitude for p in spec.peaks]
    assert len(spec.peaks) == 5
    assert mags == sorted(mags, reverse=True)
    assert spec.peaks[0].frequency == pytest.approx(90, abs=1)


def test_find_peaks_ignores_low_frequencies():
    freqs = np.arange(10, dtype=float)
    mags = np.array([0, 0, 0, 5, 0, 0, 0, 2, 0, 0], dtype=float)
    peaks = find_spectral_peaks(freqs, mags)
    assert [p.frequency for p in peaks] == [7.0]


def test_band_energy():
    freqs = np.array([10.0, 50.0, 200.0])
    mags = np.array([1.0, 2.0, 3.0])
    assert band_energy(freqs, mags) == {"low": 1.0, "mid": 4.0, "high": 9.0}


# ─── Display Range ───────────────────────────────────────────────────────────

def test_display_ceiling_floor():
    freqs = np.arange(0, 500, 1.0)
    mags = np.where(freqs <= 100, 1.0, 0.0)
    display_max, max_mag = display_ceiling(freqs, mags, 500.0)
    assert display_max == MIN_DISPLAY_HZ
    assert max_mag == 1.0


def test_display_ceiling_capped_at_nyquist():
    freqs = np.arange(0, 500, 1.0)
    mags = np.where(freqs <= 450, 1.0, 0.0)
    display_max, _ = display_ceiling(freqs, mags, 500.0)
    assert display_max == 500.0


def test_display_ceiling_margin():
    freqs = np.arange(0, 2000, 1.0)
    mags = np.where(freqs <= 400, 1.0, 0.001)
    display_max, _ = display_ceiling(freqs, mags, 2000.0)
    assert display_max == pytest.approx(520.0)


def test_spectrum_view_from_frames():
    roll = _sine(120, 1000.0, 4096, amplitude=100.0)
    view = spectrum_view(make_frames(roll, dt_us=1000), "roll")
    assert view.sample_rate == pytest.approx(1000.0)
    assert view.nyquist == pytest.approx(500.0)
    assert view.frame_count == 4096
    assert view.frequencies[-1] <= view.display_max
    assert view.peaks[0].frequency == pytest.approx(120, abs=1)
    assert set(view.to_dict()) >= {"peaks", "display_max", "nyquist", "band_energy"}


def test_spectrum_view_too_few_frames():
    view = spectrum_view(make_frames([1, 2, 3] * 10), "roll")
    assert view.empty
    assert view.peaks == []


def test_spectrum_from_decoded_log():
    buf, _ = build_log(n_frames=2048, gyro=sine_gyro(400.0, rate_hz=4000.0))
    frames, _ = parse_bbl_buffer(buf)
    view = spectrum_view(frames, "roll")
    assert view.sample_rate == pytest.approx(4000.0)
    assert view.peaks[0].frequency == pytest.approx(400, abs=3)


# ─── Cache ───────────────────────────────────────────────────────────────────

def test_cache_reuses_views_for_same_frames():
    frames = make_frames(_sine(80, 1000.0, 1024))
    cache = SpectrumCache()
    first = cache.get(frames, "roll")
    assert cache.get(frames, "roll") is first
    assert (cache.hits, cache.misses) == (1, 1)

    cache.get(frames, "pitch")
    assert cache.misses == 2


def test_cache_resets_for_new_frames():
    cache = SpectrumCache()
    frames = make_frames(_sine(80, 1000.0, 1024))
    first = cache.get(frames, "roll")
    other = list(frames)
    assert cache.get(other, "roll") is not first
    assert cache.misses == 2


def test_cache_all_axes():
    cache = SpectrumCache()
    views = cache.all_axes(make_frames(_sine(80, 1000.0, 1024)))
    assert set(views) == {"roll", "pitch", "yaw"}
