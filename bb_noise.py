#!/usr/bin/env python3
"""
Gyro noise spectrum analysis and filter recommendations.

Picks steady hover segments out of a decoded session, averages Welch-style
Hann-windowed spectra of the roll/pitch/yaw gyro over them, finds and
classifies noise peaks and turns the picture into gyro / D-term lowpass and
dynamic notch changes.
"""

import logging
import time

import numpy as np
from scipy import signal
from scipy.fft import rfft, rfftfreq

from bb_common import (AXIS_NAMES, IMPACT_BOTH, IMPACT_LATENCY, IMPACT_NOISE,
                       InsufficientDataError, Recommendation, clamp, downgrade_confidence,
                       integrity_score, merge_config, ramp_score, report, score_quality)

log = logging.getLogger("bbtune.noise")

# ─── Thresholds ───────────────────────────────────────────────────────────────

NOISE_DEFAULTS = {
    # FFT
    "fft_window": 4096,
    "fft_overlap": 0.5,
    "fft_min_window": 16,
    "freq_min_hz": 20,
    "freq_max_hz": 1000,
    # Segments
    "throttle_min": 0.15,
    "throttle_max": 0.75,
    "gyro_steady_max_std": 50,
    "segment_min_s": 0.5,
    "segment_window_s": 0.15,
    "max_segments": 5,
    # Throttle sweeps
    "sweep_min_range": 0.4,
    "sweep_min_s": 2.0,
    "sweep_max_s": 15.0,
    "sweep_max_residual": 0.15,
    "sweep_smooth_s": 0.05,
    "sweep_grid_hz": 50,
    # Peaks
    "peak_prominence_db": 6,
    "peak_local_bins": 50,
    "peak_exclude_bins": 3,
    "floor_percentile": 25,
    "level_high_db": -30,
    "level_medium_db": -50,
    "level_bump_peaks": 3,
    "level_bump_db": 20,
    # Classification
    "frame_resonance_min_hz": 80,
    "frame_resonance_max_hz": 200,
    "electrical_min_hz": 500,
    "harmonic_tolerance_ratio": 0.05,
    "harmonic_tolerance_min_hz": 5,
    "harmonic_min_peaks": 3,
    "harmonic_min_fundamental_hz": 30,
    # Recommendations
    "high_noise_gyro_step_hz": 50,
    "high_noise_dterm_step_hz": 30,
    "low_noise_gyro_step_hz": 50,
    "low_noise_dterm_step_hz": 30,
    "floor_action_db": 5,
    "resonance_action_db": 12,
    "resonance_margin_hz": 20,
    "notch_margin_hz": 20,
    "notch_min_floor_hz": 50,
    "notch_max_ceiling_hz": 1000,
    "gyro_lpf1_min_hz": 75,
    "gyro_lpf1_max_hz": 300,
    "dterm_lpf1_min_hz": 70,
    "dterm_lpf1_max_hz": 200,
    # Data quality
    "quality_full_segments": 3,
    "quality_hover_zero_s": 0.5,
    "quality_hover_full_s": 5.0,
    "quality_coverage_zero": 0.1,
    "quality_coverage_full": 0.4,
    "quality_max_corruption": 0.05,
    "quality_weights": {"segments": 0.2, "hover_time": 0.3, "throttle_coverage": 0.2,
                        "integrity": 0.3},
}

DEFAULT_FILTER_SETTINGS = {
    "gyro_lpf1_static_hz": 250,
    "gyro_lpf2_static_hz": 500,
    "dterm_lpf1_static_hz": 150,
    "dterm_lpf2_static_hz": 150,
    "dyn_notch_min_hz": 150,
    "dyn_notch_max_hz": 600,
}

# Log header names per setting, newest first
_HEADER_ALIASES = {
    "gyro_lpf1_static_hz": ("gyro_lpf1_static_hz", "gyro_lowpass_hz"),
    "gyro_lpf2_static_hz": ("gyro_lpf2_static_hz", "gyro_lowpass2_hz"),
    "dterm_lpf1_static_hz": ("dterm_lpf1_static_hz", "dterm_lowpass_hz"),
    "dterm_lpf2_static_hz": ("dterm_lpf2_static_hz", "dterm_lowpass2_hz"),
    "dyn_notch_min_hz": ("dyn_notch_min_hz",),
    "dyn_notch_max_hz": ("dyn_notch_max_hz",),
}

PEAK_LABELS = {
    "frame_resonance": "frame resonance",
    "motor_harmonic": "motor harmonic",
    "electrical": "electrical noise",
    "unknown": "noise spike",
}


# ─── Results ──────────────────────────────────────────────────────────────────

class NoisePeak:
    def __init__(self, frequency, amplitude, kind="unknown"):
        self.frequency = frequency
        self.amplitude = amplitude  # dB above the local floor
        self.type = kind

    def as_dict(self):
        return {"frequency": round(self.frequency, 1),
                "amplitude": round(self.amplitude, 1), "type": self.type}

    def __repr__(self):
        return f"<NoisePeak {self.frequency:.0f}Hz +{self.amplitude:.1f}dB {self.type}>"


class AxisNoiseProfile:
    def __init__(self, frequencies, magnitudes, noise_floor_db, peaks):
        self.frequencies = frequencies
        self.magnitudes = magnitudes
        self.noise_floor_db = noise_floor_db
        self.peaks = peaks

    def as_dict(self):
        return {"noise_floor_db": round(self.noise_floor_db, 1),
                "peaks": [p.as_dict() for p in self.peaks]}

    def __repr__(self):
        return f"<AxisNoiseProfile floor={self.noise_floor_db:.1f}dB peaks={len(self.peaks)}>"


# ─── Segment Selection ────────────────────────────────────────────────────────

def normalize_throttle(values):
    """Map 1000..2000 us, 0..1000, 0..100 % or 0..1 throttle to 0..1."""
    v = np.asarray(values, dtype=np.float64)
    return np.where(v > 1000, (v - 1000) / 1000,
                    np.where(v > 100, v / 1000,
                             np.where(v > 1, v / 100, v)))


def _rolling_std(x, half):
    """Population std over [i-half, i+half) for every i, clipped at the edges."""
    n = len(x)
    c1 = np.concatenate(([0.0], np.cumsum(x)))
    c2 = np.concatenate(([0.0], np.cumsum(x * x)))
    idx = np.arange(n)
    lo = np.maximum(0, idx - half)
    hi = np.minimum(n, idx + half)
    count = hi - lo
    safe = np.maximum(count, 1)
    mean = (c1[hi] - c1[lo]) / safe
    var = (c2[hi] - c2[lo]) / safe - mean * mean
    std = np.sqrt(np.maximum(var, 0.0))
    std[count <= 1] = 0.0
    return std


def find_steady_segments(flight_data, config=None):
    """Hover-like stretches: throttle in band and little roll/pitch motion.

    Returns a list of {"start", "end", "duration_s", "avg_throttle"} dicts,
    longest first.
    """
    cfg = merge_config(NOISE_DEFAULTS, config)
    sr = flight_data.sample_rate
    throttle = normalize_throttle(flight_data.setpoint[3].values)
    n = len(throttle)
    if n == 0:
        return []

    window = min(int(cfg["segment_window_s"] * sr), n)
    half = window // 2
    roll_std = _rolling_std(flight_data.gyro[0].values, half)
    pitch_std = _rolling_std(flight_data.gyro[1].values, half)
    steady = ((throttle >= cfg["throttle_min"]) & (throttle <= cfg["throttle_max"])
              & (roll_std <= cfg["gyro_steady_max_std"])
              & (pitch_std <= cfg["gyro_steady_max_std"]))

    edges = np.diff(np.concatenate(([0], steady.astype(np.int8), [0])))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)
    min_len = int(cfg["segment_min_s"] * sr)
    t = flight_data.setpoint[3].time

    segments = []
    for s, e in zip(starts, ends):
        if e - s < max(min_len, 1):
            continue
        duration = float(t[e - 1] - t[s]) if len(t) >= e else 0.0
        segments.append({
            "start": int(s),
            "end": int(e),
            "duration_s": duration if duration > 0 else (e - s) / sr,
            "avg_throttle": float(np.mean(throttle[s:e])),
        })
    segments.sort(key=lambda seg: seg["duration_s"], reverse=True)
    return segments


def find_throttle_sweeps(flight_data, config=None):
    """Stretches where throttle rises or falls steadily across a wide range.

    A sweep covers at least sweep_min_range of normalised throttle over
    sweep_min_s..sweep_max_s and stays close to a straight line. The search
    runs on throttle smoothed and resampled to sweep_grid_hz. Returned
    widest first, same dict shape as find_steady_segments() plus "range".
    """
    cfg = merge_config(NOISE_DEFAULTS, config)
    sr = flight_data.sample_rate
    raw = normalize_throttle(flight_data.setpoint[3].values)
    n_raw = len(raw)
    if n_raw == 0 or sr <= 0:
        return []

    smooth_n = max(1, int(sr * cfg["sweep_smooth_s"]))
    if smooth_n > 1:
        raw = np.convolve(raw, np.ones(smooth_n) / smooth_n, mode="same")
    stride = max(1, int(sr / cfg["sweep_grid_hz"]))
    y = raw[::stride]
    grid_sr = sr / stride
    n = len(y)
    min_len = max(2, int(cfg["sweep_min_s"] * grid_sr))
    max_len = int(cfg["sweep_max_s"] * grid_sr)
    if n < min_len:
        return []

    # Prefix sums for O(1) linear fits of y over any [start, end)
    k = np.arange(n, dtype=np.float64)
    p_k = np.concatenate(([0.0], np.cumsum(k)))
    p_kk = np.concatenate(([0.0], np.cumsum(k * k)))
    p_y = np.concatenate(([0.0], np.cumsum(y)))
    p_ky = np.concatenate(([0.0], np.cumsum(k * y)))
    p_yy = np.concatenate(([0.0], np.cumsum(y * y)))

    sweeps = []
    i = 0
    while i < n - min_len:
        stop = min(i + max_len, n)
        seg = y[i:stop]
        if y[i] < cfg["throttle_min"] or np.ptp(seg) < cfg["sweep_min_range"]:
            i += 1
            continue
        ends = np.arange(i + min_len, stop + 1)
        cnt = (ends - i).astype(np.float64)
        sk = p_k[ends] - p_k[i] - i * cnt
        skk = (p_kk[ends] - p_kk[i]) - 2 * i * (p_k[ends] - p_k[i]) + i * i * cnt
        sy = p_y[ends] - p_y[i]
        sky = (p_ky[ends] - p_ky[i]) - i * sy
        syy = p_yy[ends] - p_yy[i]
        denom = skk - sk * sk / cnt
        with np.errstate(divide="ignore", invalid="ignore"):
            b = np.where(denom > 0, (sky - sk * sy / cnt) / denom, 0.0)
        a = (sy - b * sk) / cnt
        ss_res = syy - 2 * a * sy - 2 * b * sky + cnt * a * a + 2 * a * b * sk + b * b * skk
        rmse = np.sqrt(np.maximum(ss_res, 0.0) / cnt)

        span = np.maximum.accumulate(seg) - np.minimum.accumulate(seg)
        span = span[ends - 1 - i]
        reach = np.abs(y[ends - 1] - y[i])
        with np.errstate(divide="ignore", invalid="ignore"):
            residual = np.where(span > 0, rmse / span, 1.0)
        ok = (reach >= cfg["sweep_min_range"]) & (residual <= cfg["sweep_max_residual"])
        if np.any(ok):
            best = int(np.argmax(np.where(ok, reach, -1.0)))
            end = int(ends[best])
            start_s, end_s = i * stride, min(end * stride, n_raw)
            sweeps.append({
                "start": start_s,
                "end": end_s,
                "duration_s": (end_s - start_s) / sr,
                "avg_throttle": float(np.mean(raw[start_s:end_s])),
                "range": float(span[best]),
            })
            i = end
        else:
            i += 1
    sweeps.sort(key=lambda s: s["range"], reverse=True)
    return sweeps


# ─── Spectrum ─────────────────────────────────────────────────────────────────

def _largest_pow2(n):
    p = 1
    while p * 2 <= n:
        p *= 2
    return p


def segment_spectrum(x, sr, nfft, overlap=0.5):
    """Welch-style magnitude spectrum in dB, linear-averaged over windows."""
    x = np.asarray(x, dtype=np.float64)
    step = max(1, int(nfft * (1 - overlap)))
    frames = np.lib.stride_tricks.sliding_window_view(x, nfft)[::step]
    win = signal.get_window("hann", nfft)
    mags = np.abs(rfft(frames * win, axis=-1)) / nfft
    return rfftfreq(nfft, 1.0 / sr), np.mean(mags, axis=0)


def _to_db(linear):
    out = np.full(len(linear), -240.0)
    mask = linear > 1e-12
    out[mask] = 20 * np.log10(linear[mask])
    return out


# ─── Peaks and Classification ─────────────────────────────────────────────────

def estimate_noise_floor(magnitudes, percentile=25):
    if len(magnitudes) == 0:
        return -240.0
    ordered = np.sort(magnitudes)
    return float(ordered[int(len(ordered) * percentile / 100)])


def detect_peaks(freqs, magnitudes, cfg):
    """Local maxima standing at least peak_prominence_db above their neighbourhood."""
    if len(magnitudes) < 3:
        return []
    idx, _ = signal.find_peaks(magnitudes)
    width = cfg["peak_local_bins"]
    exclude = cfg["peak_exclude_bins"]
    peaks = []
    for i in idx:
        lo, hi = max(0, i - width), min(len(magnitudes), i + width + 1)
        neighbours = np.concatenate((magnitudes[lo:max(lo, i - exclude)],
                                     magnitudes[min(hi, i + exclude + 1):hi]))
        floor = float(np.median(neighbours)) if len(neighbours) else float(magnitudes[i])
        prominence = float(magnitudes[i]) - floor
        if prominence >= cfg["peak_prominence_db"]:
            peaks.append((float(freqs[i]), prominence))
    peaks.sort(key=lambda p: p[1], reverse=True)
    return peaks


def _harmonic_tol(hz, cfg):
    return max(cfg["harmonic_tolerance_min_hz"], hz * cfg["harmonic_tolerance_ratio"])


def _on_series(freq, fundamental, cfg):
    mult = round(freq / fundamental)
    return mult >= 1 and abs(freq - fundamental * mult) < _harmonic_tol(fundamental * mult, cfg)


def classify_peak(freq, all_freqs, cfg):
    if len(all_freqs) >= cfg["harmonic_min_peaks"]:
        ordered = sorted(all_freqs)
        for fundamental in ordered:
            if fundamental < cfg["harmonic_min_fundamental_hz"]:
                continue
            hits = sum(1 for f in ordered if _on_series(f, fundamental, cfg))
            if hits >= cfg["harmonic_min_peaks"] and _on_series(freq, fundamental, cfg):
                return "motor_harmonic"
    if cfg["frame_resonance_min_hz"] <= freq <= cfg["frame_resonance_max_hz"]:
        return "frame_resonance"
    if freq >= cfg["electrical_min_hz"]:
        return "electrical"
    return "unknown"


def analyze_axis(freqs, magnitudes, cfg):
    floor = estimate_noise_floor(magnitudes, cfg["floor_percentile"])
    raw = detect_peaks(freqs, magnitudes, cfg)
    all_freqs = [f for f, _ in raw]
    peaks = [NoisePeak(f, a, classify_peak(f, all_freqs, cfg)) for f, a in raw]
    return AxisNoiseProfile(freqs, magnitudes, floor, peaks)


def overall_level(roll, pitch, cfg):
    worst = max(roll.noise_floor_db, pitch.noise_floor_db)
    if worst > cfg["level_high_db"]:
        return "high"
    if worst > cfg["level_medium_db"]:
        return "medium"
    strong = [p for p in roll.peaks + pitch.peaks if p.amplitude >= cfg["level_bump_db"]]
    if len(strong) >= cfg["level_bump_peaks"]:
        return "medium"
    return "low"


# ─── Recommendations ──────────────────────────────────────────────────────────

def filter_settings_from_header(raw_headers):
    """Current filter settings as logged, falling back to firmware defaults."""
    settings = dict(DEFAULT_FILTER_SETTINGS)
    for key, aliases in _HEADER_ALIASES.items():
        for name in aliases:
            value = raw_headers.get(name)
            if value is None:
                continue
            try:
                settings[key] = int(str(value).split(",")[0])
            except ValueError:
                continue
            break
    return settings


def _confidence(margin, threshold):
    return "high" if margin >= 2 * threshold else "medium"


def recommend_filters(noise, current, cfg):
    recs = []
    level = noise["overall_level"]
    gyro_lpf = current["gyro_lpf1_static_hz"]
    dterm_lpf = current["dterm_lpf1_static_hz"]
    gyro_off = gyro_lpf == 0

    def add(setting, cur, new, reason, impact, confidence):
        if new != cur:
            recs.append(Recommendation(setting, cur, new, reason, impact, confidence))

    # Noise floor, confidence from the distance past the level boundary
    worst = max(noise["roll"].noise_floor_db, noise["pitch"].noise_floor_db)
    if level == "high":
        floor_conf = _confidence(worst - cfg["level_high_db"], cfg["floor_action_db"])
    else:
        floor_conf = _confidence(cfg["level_medium_db"] - worst, cfg["floor_action_db"])
    if level == "high":
        if not gyro_off:
            add("gyro_lpf1_static_hz", gyro_lpf,
                clamp(gyro_lpf - cfg["high_noise_gyro_step_hz"], cfg["gyro_lpf1_min_hz"], cfg["gyro_lpf1_max_hz"]),
                "Gyro noise is high. A lower gyro lowpass cleans the signal so the PID "
                "loop reacts to real motion instead of vibration.", IMPACT_BOTH, floor_conf)
        add("dterm_lpf1_static_hz", dterm_lpf,
            clamp(dterm_lpf - cfg["high_noise_dterm_step_hz"], cfg["dterm_lpf1_min_hz"], cfg["dterm_lpf1_max_hz"]),
            "High noise reaches the D-term. A lower D-term lowpass reduces motor heat "
            "and D-term oscillation.", IMPACT_BOTH, floor_conf)
    elif level == "low":
        if not gyro_off:
            add("gyro_lpf1_static_hz", gyro_lpf,
                clamp(gyro_lpf + cfg["low_noise_gyro_step_hz"], cfg["gyro_lpf1_min_hz"], cfg["gyro_lpf1_max_hz"]),
                "Gyro is very clean. A higher gyro lowpass cutoff gives faster response "
                "with little downside.", IMPACT_LATENCY, floor_conf)
        add("dterm_lpf1_static_hz", dterm_lpf,
            clamp(dterm_lpf + cfg["low_noise_dterm_step_hz"], cfg["dterm_lpf1_min_hz"], cfg["dterm_lpf1_max_hz"]),
            "Low noise lets the D-term filter relax for sharper stick response.",
            IMPACT_LATENCY, floor_conf)

    # Resonance peaks on roll/pitch
    threshold = cfg["resonance_action_db"]
    strong = [p for p in noise["roll"].peaks + noise["pitch"].peaks if p.amplitude >= threshold]
    if strong:
        lowest = min(strong, key=lambda p: p.frequency)
        label = PEAK_LABELS.get(lowest.type, "noise spike")
        conf = _confidence(lowest.amplitude, threshold)
        if gyro_off or lowest.frequency < gyro_lpf:
            target = int(clamp(round(lowest.frequency - cfg["resonance_margin_hz"]),
                               cfg["gyro_lpf1_min_hz"], cfg["gyro_lpf1_max_hz"]))
            if gyro_off or target < gyro_lpf:
                if gyro_off:
                    reason = (f"Strong {label} at {lowest.frequency:.0f} Hz while the gyro lowpass "
                              f"is disabled. Enabling it at {target} Hz blocks this vibration.")
                else:
                    reason = (f"Strong {label} at {lowest.frequency:.0f} Hz, below the gyro lowpass "
                              f"cutoff of {gyro_lpf} Hz. Lowering the cutoff blocks this vibration.")
                add("gyro_lpf1_static_hz", gyro_lpf, target, reason, IMPACT_BOTH, conf)
        if lowest.frequency < dterm_lpf:
            target = int(clamp(round(lowest.frequency - cfg["resonance_margin_hz"]),
                               cfg["dterm_lpf1_min_hz"], cfg["dterm_lpf1_max_hz"]))
            if target < dterm_lpf:
                add("dterm_lpf1_static_hz", dterm_lpf, target,
                    f"Strong resonance at {lowest.frequency:.0f} Hz gets through to the D-term. "
                    f"A lower D-term lowpass reduces motor heat.", IMPACT_BOTH, conf)

    # Dynamic notch range, all axes
    peaks = [p for axis in AXIS_NAMES for p in noise[axis].peaks if p.amplitude >= threshold]
    notch_min = current["dyn_notch_min_hz"]
    notch_max = current["dyn_notch_max_hz"]
    below = [p for p in peaks if p.frequency < notch_min]
    above = [p for p in peaks if p.frequency > notch_max]
    if below:
        low = min(below, key=lambda p: p.frequency)
        new_min = max(cfg["notch_min_floor_hz"], int(round(low.frequency - cfg["notch_margin_hz"])))
        if new_min < notch_min:
            add("dyn_notch_min_hz", notch_min, new_min,
                f"Noise peak at {low.frequency:.0f} Hz sits below the dynamic notch minimum of "
                f"{notch_min} Hz. Lowering the minimum lets the notch track it.",
                IMPACT_NOISE, _confidence(low.amplitude, threshold))
    if above:
        high = max(above, key=lambda p: p.frequency)
        new_max = min(cfg["notch_max_ceiling_hz"], int(round(high.frequency + cfg["notch_margin_hz"])))
        if new_max > notch_max:
            add("dyn_notch_max_hz", notch_max, new_max,
                f"Noise peak at {high.frequency:.0f} Hz sits above the dynamic notch maximum of "
                f"{notch_max} Hz. Raising the maximum lets the notch catch it.",
                IMPACT_NOISE, _confidence(high.amplitude, threshold))

    return _dedupe(recs)


def _dedupe(recs):
    """One recommendation per setting; the more aggressive value wins."""
    chosen = {}
    for rec in recs:
        prev = chosen.get(rec.setting)
        if prev is None:
            chosen[rec.setting] = rec
            continue
        lower_wins = "lpf" in rec.setting or "min" in rec.setting
        better = rec.recommended < prev.recommended if lower_wins else rec.recommended > prev.recommended
        if better:
            conf = "high" if "high" in (rec.confidence, prev.confidence) else "medium"
            chosen[rec.setting] = Recommendation(rec.setting, rec.current, rec.recommended,
                                                 rec.reason, rec.impact, conf)
    return list(chosen.values())


def summarize(noise, recs):
    level = noise["overall_level"]
    parts = [{"high": "Significant vibration or noise in the gyro.",
              "low": "Gyro is running very clean."}.get(level, "Noise levels are moderate.")]
    peaks = noise["roll"].peaks + noise["pitch"].peaks
    frame = next((p for p in peaks if p.type == "frame_resonance"), None)
    motor = next((p for p in peaks if p.type == "motor_harmonic"), None)
    if frame:
        parts.append(f"Frame resonance around {frame.frequency:.0f} Hz.")
    if motor:
        parts.append(f"Motor harmonic noise around {motor.frequency:.0f} Hz.")
    if recs:
        parts.append(f"{len(recs)} filter change{'s' if len(recs) > 1 else ''} recommended.")
    else:
        parts.append("Current filter settings look good, no changes needed.")
    return " ".join(parts)


# ─── Data Quality ─────────────────────────────────────────────────────────────

def score_noise_data(segments, sweeps, frame_count, corrupted_frames, cfg):
    """How far the noise picture can be trusted, 0..100 with a tier.

    A throttle sweep counts as full throttle coverage; otherwise coverage is
    the spread of the hover segments' average throttle.
    """
    hover_s = sum(s["duration_s"] for s in segments)
    if sweeps:
        coverage = 100
    elif segments:
        spread = max(s["avg_throttle"] for s in segments) - min(s["avg_throttle"] for s in segments)
        coverage = ramp_score(spread, cfg["quality_coverage_zero"], cfg["quality_coverage_full"])
    else:
        coverage = 0
    sub = {
        "segments": ramp_score(len(segments), 0, cfg["quality_full_segments"]),
        "hover_time": ramp_score(hover_s, cfg["quality_hover_zero_s"], cfg["quality_hover_full_s"]),
        "throttle_coverage": coverage,
        "integrity": integrity_score(corrupted_frames, frame_count, cfg["quality_max_corruption"]),
    }
    return score_quality(sub, cfg["quality_weights"])


# ─── Entry Point ──────────────────────────────────────────────────────────────

def analyze(flight_data, session_index=0, current_settings=None, progress=None, config=None,
            corrupted_frames=0):
    """Run segmenting, FFT, peak analysis and filter recommendations.

    corrupted_frames is the session's corruption count; with the hover time
    and throttle coverage it sets the data quality, and poor data lowers the
    confidence of every recommendation.
    Raises InsufficientDataError when the session holds no hover segment.
    """
    started = time.perf_counter()
    cfg = merge_config(NOISE_DEFAULTS, config)
    current = dict(DEFAULT_FILTER_SETTINGS)
    current.update(current_settings or {})
    sr = flight_data.sample_rate

    report(progress, step="segmenting", percent=5)
    if flight_data.frame_count == 0 or len(flight_data.setpoint[3].values) == 0:
        raise InsufficientDataError("not enough hover data: the session is empty")
    segments = find_steady_segments(flight_data, config)[:cfg["max_segments"]]
    if not segments:
        raise InsufficientDataError("not enough hover data: no steady segment found")

    shortest = min(s["end"] - s["start"] for s in segments)
    nfft = cfg["fft_window"] if shortest >= cfg["fft_window"] else _largest_pow2(shortest)
    if nfft < cfg["fft_min_window"]:
        raise InsufficientDataError(f"not enough hover data: segments too short for an FFT ({shortest} samples)")
    log.info(f"Noise: {len(segments)} segment(s), FFT size {nfft} @ {sr:.0f}Hz")

    sums = [None, None, None]
    freqs = None
    for n, seg in enumerate(segments):
        for a in range(3):
            x = flight_data.gyro[a].values[seg["start"]:seg["end"]]
            freqs, mag = segment_spectrum(x, sr, nfft, cfg["fft_overlap"])
            sums[a] = mag if sums[a] is None else sums[a] + mag
        report(progress, step="fft", percent=20 + int(40 * (n + 1) / len(segments)))

    report(progress, step="analyzing", percent=65)
    band = (freqs >= cfg["freq_min_hz"]) & (freqs <= cfg["freq_max_hz"])
    profiles = {}
    for a, axis in enumerate(AXIS_NAMES):
        mags = _to_db(sums[a] / len(segments))
        profiles[axis] = analyze_axis(freqs[band], mags[band], cfg)
    noise = dict(profiles)
    noise["overall_level"] = overall_level(profiles["roll"], profiles["pitch"], cfg)

    sweeps = find_throttle_sweeps(flight_data, config)
    quality = score_noise_data(segments, sweeps, flight_data.frame_count, corrupted_frames, cfg)
    log.info(f"Noise data quality: {quality['score']}/100 ({quality['tier']}), "
             f"{len(sweeps)} throttle sweep(s)")

    report(progress, step="recommending", percent=85)
    recs = downgrade_confidence(recommend_filters(noise, current, cfg), quality["tier"])
    summary = summarize(noise, recs)
    report(progress, step="recommending", percent=100)

    return {
        "noise": noise,
        "recommendations": recs,
        "summary": summary,
        "analysis_time_ms": int((time.perf_counter() - started) * 1000),
        "session_index": session_index,
        "segments_used": len(segments),
        "sweeps_found": len(sweeps),
        "data_quality": quality,
        "current_settings": current,
    }
