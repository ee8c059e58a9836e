#!/usr/bin/env python3
"""
Step-response analysis and PID / feedforward recommendations.

Finds sharp stick "snaps" in the setpoint, measures how the gyro follows
each one (latency, rise time, overshoot, settling, ringing), compares the
per-axis means against the bands of the chosen flight style and proposes
small P/D/F moves.
"""

import logging
import time

import numpy as np

from bb_common import (AXIS_NAMES, IMPACT_BOTH, IMPACT_LATENCY, IMPACT_RESPONSE,
                       IMPACT_STABILITY, InsufficientDataError, Recommendation,
                       clamp, downgrade_confidence, integrity_score, merge_config,
                       ramp_score, report, score_quality)

log = logging.getLogger("bbtune.steps")

# ─── Thresholds ───────────────────────────────────────────────────────────────

PID_STYLE_THRESHOLDS = {
    "smooth": {
        "overshoot_ideal": 3, "overshoot_max": 12, "settling_max_ms": 250,
        "ringing_max": 1, "moderate_overshoot": 8, "sluggish_rise_ms": 120,
        "latency_max_ms": 20,
    },
    "balanced": {
        "overshoot_ideal": 10, "overshoot_max": 25, "settling_max_ms": 200,
        "ringing_max": 2, "moderate_overshoot": 15, "sluggish_rise_ms": 80,
        "latency_max_ms": 15,
    },
    "aggressive": {
        "overshoot_ideal": 18, "overshoot_max": 35, "settling_max_ms": 150,
        "ringing_max": 3, "moderate_overshoot": 25, "sluggish_rise_ms": 50,
        "latency_max_ms": 10,
    },
}

STEP_DEFAULTS = {
    # Detection
    "min_magnitude": 100,          # deg/s
    "derivative_threshold": 500,   # deg/s^2
    "edge_continue_ratio": 0.3,
    "response_window_ms": 300,
    "cooldown_ms": 100,
    "min_hold_ms": 50,
    "hold_tolerance": 0.5,
    # Metrics
    "settling_tolerance": 0.02,
    "rise_low": 0.1,
    "rise_high": 0.9,
    "latency_threshold": 0.05,
    "steady_tail": 0.2,
    "degenerate_overshoot": 500,
    # Recommendations
    "pid_step": 5,
    "ff_step": 10,
    "d_high_ratio": 0.6,
    "yaw_overshoot_scale": 1.5,
    "yaw_rise_scale": 1.5,
    "p_range": [20, 120],
    "i_range": [30, 120],
    "d_range": [15, 80],
    "f_range": [0, 250],
    "styles": PID_STYLE_THRESHOLDS,
    # Data quality
    "quality_full_steps": 10,
    "quality_max_corruption": 0.05,
    "quality_weights": {"step_count": 0.25, "axis_coverage": 0.15, "clean_responses": 0.25,
                        "integrity": 0.35},
}

DEFAULT_PIDS = {
    "roll": {"P": 45, "I": 80, "D": 30, "F": 0},
    "pitch": {"P": 47, "I": 84, "D": 32, "F": 0},
    "yaw": {"P": 45, "I": 80, "D": 0, "F": 0},
}


# ─── Results ──────────────────────────────────────────────────────────────────

class StepEvent:
    def __init__(self, axis, start, end, magnitude):
        self.axis = axis
        self.start = start
        self.end = end
        self.magnitude = magnitude
        self.direction = "positive" if magnitude > 0 else "negative"

    def as_dict(self):
        return {"axis": AXIS_NAMES[self.axis], "start": self.start, "end": self.end,
                "magnitude": round(self.magnitude, 1), "direction": self.direction}

    def __repr__(self):
        return f"<StepEvent {AXIS_NAMES[self.axis]} @{self.start} {self.magnitude:+.0f}deg/s>"


class StepResponse:
    def __init__(self, step, rise_time_ms, overshoot_percent, settling_time_ms,
                 latency_ms, ringing_count, peak_value, steady_state_value, trace=None):
        self.step = step
        self.rise_time_ms = rise_time_ms
        self.overshoot_percent = overshoot_percent
        self.settling_time_ms = settling_time_ms
        self.latency_ms = latency_ms
        self.ringing_count = ringing_count
        self.peak_value = peak_value
        self.steady_state_value = steady_state_value
        self.trace = trace or {"time_ms": [], "setpoint": [], "gyro": []}

    def as_dict(self):
        return {
            "step": self.step.as_dict(),
            "rise_time_ms": round(self.rise_time_ms, 1),
            "overshoot_percent": round(self.overshoot_percent, 1),
            "settling_time_ms": round(self.settling_time_ms, 1),
            "latency_ms": round(self.latency_ms, 1),
            "ringing_count": self.ringing_count,
        }

    def __repr__(self):
        return (f"<StepResponse OS={self.overshoot_percent:.1f}% rise={self.rise_time_ms:.1f}ms "
                f"settle={self.settling_time_ms:.1f}ms>")


# ─── Detection ────────────────────────────────────────────────────────────────

def _holds(sp, start, target, magnitude, hold, tolerance):
    end = min(start + hold, len(sp))
    if end - start < hold * 0.5:
        return True  # too close to the end of the log to tell
    return bool(np.all(np.abs(sp[start:end] - target) <= abs(magnitude) * tolerance))


def detect_axis_steps(setpoint, sample_rate, axis, cfg):
    sp = np.asarray(setpoint, dtype=np.float64)
    n = len(sp)
    if n < 2:
        return []
    cooldown = int(np.ceil(cfg["cooldown_ms"] / 1000 * sample_rate))
    hold = int(np.ceil(cfg["min_hold_ms"] / 1000 * sample_rate))
    window = int(np.ceil(cfg["response_window_ms"] / 1000 * sample_rate))
    threshold = cfg["derivative_threshold"]
    relaxed = threshold * cfg["edge_continue_ratio"]

    deriv = np.diff(sp) * sample_rate
    candidates = np.flatnonzero(np.abs(deriv) >= threshold)

    steps = []
    last_end = -cooldown
    resume = 0
    for i in candidates:
        if i < resume:
            continue
        rising = deriv[i] > 0
        edge_end = i
        while edge_end < n - 1:
            d = deriv[edge_end + 1] if edge_end + 1 < n - 1 else 0.0
            if (rising and d > relaxed) or (not rising and d < -relaxed):
                edge_end += 1
            else:
                break
        after = sp[min(edge_end + 1, n - 1)]
        magnitude = float(after - sp[i])
        resume = edge_end + 1

        if abs(magnitude) < cfg["min_magnitude"]:
            continue
        if i - last_end < cooldown:
            continue
        if not _holds(sp, edge_end + 1, after, magnitude, hold, cfg["hold_tolerance"]):
            continue
        end = min(i + window, n)
        steps.append(StepEvent(axis, int(i), int(end), magnitude))
        last_end = end
    return steps


def detect_steps(flight_data, config=None):
    """All step events on roll, pitch and yaw, largest magnitude first."""
    cfg = merge_config(STEP_DEFAULTS, config)
    steps = []
    for axis in range(3):
        steps.extend(detect_axis_steps(flight_data.setpoint[axis].values,
                                       flight_data.sample_rate, axis, cfg))
    steps.sort(key=lambda s: abs(s.magnitude), reverse=True)
    return steps


# ─── Metrics ──────────────────────────────────────────────────────────────────

def _first(mask):
    idx = np.flatnonzero(mask)
    return int(idx[0]) if len(idx) else -1


def compute_step_response(setpoint, gyro, step, sample_rate, config=None):
    cfg = merge_config(STEP_DEFAULTS, config)
    ms = 1000.0 / sample_rate
    start, end = step.start, step.end
    g = np.asarray(gyro, dtype=np.float64)
    resp = g[start:end]
    length = end - start
    full = length * ms

    baseline = float(g[start - 1] if start > 0 else g[start])
    tail = start + int(length * (1 - cfg["steady_tail"]))
    steady = float(np.mean(g[tail:end])) if end > tail else baseline
    effective = steady - baseline

    trace = {
        "time_ms": (np.arange(length) * ms).tolist(),
        "setpoint": np.asarray(setpoint[start:end], dtype=np.float64).tolist(),
        "gyro": resp.tolist(),
    }

    if abs(effective) < 1:
        return StepResponse(step, full, 0.0, full, full, 0, baseline, steady, trace)

    up = effective > 0

    lat = _first(np.abs(resp - baseline) > cfg["latency_threshold"] * abs(step.magnitude))
    latency = lat * ms if lat >= 0 else full

    low = baseline + effective * cfg["rise_low"]
    high = baseline + effective * cfg["rise_high"]
    rise_low = _first(resp >= low if up else resp <= low)
    rise_high = _first(resp >= high if up else resp <= high)
    rise = (rise_high - rise_low) * ms if rise_low >= 0 and rise_high >= 0 else full

    peak = float(max(baseline, resp.max()) if up else min(baseline, resp.min()))
    beyond = (peak - steady) if up else (steady - peak)
    overshoot = max(0.0, beyond / abs(effective) * 100)

    outside = np.flatnonzero(np.abs(resp - steady) > abs(effective) * cfg["settling_tolerance"])
    settling = (int(outside[-1]) + 1) * ms if len(outside) else 0.0

    ring_from = rise_high if rise_high >= 0 else int(length * 0.3)
    signs = np.sign(resp[ring_from:] - steady)
    signs = signs[signs != 0]
    crossings = int(np.count_nonzero(signs[1:] != signs[:-1])) if len(signs) > 1 else 0

    return StepResponse(step, rise, overshoot, settling, latency, crossings // 2,
                        peak, steady, trace)


def aggregate_axis(responses, config=None):
    cfg = merge_config(STEP_DEFAULTS, config)
    profile = {
        "responses": responses,
        "mean_overshoot": 0.0,
        "mean_rise_time_ms": 0.0,
        "mean_settling_time_ms": 0.0,
        "mean_latency_ms": 0.0,
        "max_ringing": 0,
    }
    if not responses:
        return profile
    valid = [r for r in responses
             if r.rise_time_ms > 0 and r.overshoot_percent < cfg["degenerate_overshoot"]]
    src = valid or responses
    profile["mean_overshoot"] = float(np.mean([r.overshoot_percent for r in src]))
    profile["mean_rise_time_ms"] = float(np.mean([r.rise_time_ms for r in src]))
    profile["mean_settling_time_ms"] = float(np.mean([r.settling_time_ms for r in src]))
    profile["mean_latency_ms"] = float(np.mean([r.latency_ms for r in src]))
    profile["max_ringing"] = max(r.ringing_count for r in responses)
    return profile


def score_step_data(profiles, frame_count, corrupted_frames, cfg):
    responses = [r for axis in AXIS_NAMES for r in profiles[axis]["responses"]]
    covered = sum(1 for axis in AXIS_NAMES if profiles[axis]["responses"])
    clean = [r for r in responses
             if r.rise_time_ms > 0 and r.overshoot_percent < cfg["degenerate_overshoot"]]
    sub = {
        "step_count": ramp_score(len(responses), 0, cfg["quality_full_steps"]),
        "axis_coverage": ramp_score(covered, 0, len(AXIS_NAMES)),
        "clean_responses": ramp_score(len(clean) / len(responses), 0, 1) if responses else 0,
        "integrity": integrity_score(corrupted_frames, frame_count, cfg["quality_max_corruption"]),
    }
    return score_quality(sub, cfg["quality_weights"])


# ─── Recommendations ──────────────────────────────────────────────────────────

def extract_flight_pids(raw_headers):
    """PIDs the log was flown with, from rollPID/pitchPID/yawPID headers.

    Returns None when any axis is missing. F comes from a fourth value in
    the axis header or from ff_weight ("roll,pitch,yaw").
    """
    result = {}
    ff = [int(x) if x.strip().lstrip("-").isdigit() else 0
          for x in raw_headers.get("ff_weight", "").split(",")]
    for a, axis in enumerate(AXIS_NAMES):
        text = raw_headers.get(f"{axis}PID")
        if not text:
            return None
        parts = []
        for x in text.split(","):
            try:
                parts.append(int(x))
            except ValueError:
                parts.append(0)
        parts += [0] * 4
        f = parts[3] if len(text.split(",")) > 3 else (ff[a] if a < len(ff) else 0)
        result[axis] = {"P": parts[0], "I": parts[1], "D": parts[2], "F": f}
    return result


def _axis_bands(style, axis, cfg):
    bands = dict(style)
    if axis == "yaw":
        bands["moderate_overshoot"] = style["overshoot_max"]
        bands["overshoot_max"] = style["overshoot_max"] * cfg["yaw_overshoot_scale"]
        bands["sluggish_rise_ms"] = style["sluggish_rise_ms"] * cfg["yaw_rise_scale"]
    return bands


def recommend_pids(profiles, current_pids, flight_style="balanced", flight_pids=None, config=None):
    cfg = merge_config(STEP_DEFAULTS, config)
    if flight_style not in cfg["styles"]:
        raise ValueError(f"unknown flight style '{flight_style}'")
    style = cfg["styles"][flight_style]
    step, ff_step = cfg["pid_step"], cfg["ff_step"]
    p_lo, p_hi = cfg["p_range"]
    d_lo, d_hi = cfg["d_range"]
    f_lo, f_hi = cfg["f_range"]
    recs = []

    for axis in AXIS_NAMES:
        profile = profiles[axis]
        if not profile["responses"]:
            continue
        pids = current_pids[axis]
        base = (flight_pids or current_pids)[axis]
        bands = _axis_bands(style, axis, cfg)
        os_ = profile["mean_overshoot"]
        rise = profile["mean_rise_time_ms"]
        latency = profile["mean_latency_ms"]
        axis_recs = {}

        def add(term, target, reason, impact, confidence):
            key = f"pid_{axis}_{term.lower()}"
            cur = pids.get(term, 0)
            if target != cur and key not in axis_recs:
                axis_recs[key] = Recommendation(key, cur, target, reason, impact, confidence)

        d_up = int(clamp(round(base["D"] + step), d_lo, d_hi))
        if os_ > bands["overshoot_max"]:
            add("D", d_up, f"Significant overshoot on {axis} ({os_:.0f}%). More D damps the "
                f"bounce-back.", IMPACT_BOTH, "high")
            if base["D"] >= d_hi * cfg["d_high_ratio"]:
                add("P", int(clamp(round(base["P"] - step), p_lo, p_hi)),
                    f"Significant overshoot on {axis} ({os_:.0f}%) with D already high. "
                    f"Less P keeps it from overshooting the target.", IMPACT_BOTH, "high")
        elif os_ > bands["moderate_overshoot"]:
            add("D", d_up, f"Overshoot on {axis} stick inputs ({os_:.0f}%). More D damps the "
                f"response.", IMPACT_STABILITY, "medium")

        if os_ < bands["overshoot_ideal"] and rise > bands["sluggish_rise_ms"]:
            add("P", int(clamp(round(base["P"] + step), p_lo, p_hi)),
                f"Response is sluggish on {axis} ({rise:.0f}ms rise time). More P tightens it up.",
                IMPACT_RESPONSE, "medium")

        if profile["max_ringing"] > bands["ringing_max"]:
            add("D", d_up, f"Oscillation on {axis} after stick moves ({profile['max_ringing']} "
                f"cycles). More D calms the wobble.", IMPACT_STABILITY, "medium")

        if (profile["mean_settling_time_ms"] > bands["settling_max_ms"]
                and os_ < bands["moderate_overshoot"]):
            add("D", d_up, f"{axis.capitalize()} takes {profile['mean_settling_time_ms']:.0f}ms "
                f"to settle. A little more D helps it lock in.", IMPACT_STABILITY, "low")

        base_f = base.get("F", 0)
        if os_ < bands["overshoot_ideal"] and latency > bands["latency_max_ms"]:
            add("F", int(clamp(round(base_f + ff_step), f_lo, f_hi)),
                f"Response lags on {axis} ({latency:.0f}ms) with little overshoot. More "
                f"feedforward gets it moving sooner.", IMPACT_LATENCY, "medium")
        elif os_ > bands["overshoot_max"] and latency < bands["latency_max_ms"] / 2:
            add("F", int(clamp(round(base_f - ff_step), f_lo, f_hi)),
                f"Fast but overshooting on {axis} ({os_:.0f}%). Less feedforward softens the "
                f"stick punch.", IMPACT_STABILITY, "medium")

        recs.extend(axis_recs.values())
    return recs


def summarize(profiles, recs):
    total = sum(len(profiles[a]["responses"]) for a in AXIS_NAMES)
    if total == 0:
        return "No step inputs detected. Fly quick, decisive stick moves for PID analysis."
    if not recs:
        return (f"Analyzed {total} stick inputs. Response is quick with little overshoot, "
                f"no changes recommended.")
    reasons = " ".join(r.reason.lower() for r in recs)
    issues = [word for word, key in (("overshoot", "overshoot"), ("sluggish response", "sluggish"),
                                     ("oscillation", "oscillation"), ("lag", "lags"))
              if key in reasons]
    found = " and ".join(issues) if issues else "room for improvement"
    return (f"Analyzed {total} stick inputs and found {found}. "
            f"{len(recs)} adjustment{'s' if len(recs) != 1 else ''} recommended.")


# ─── Entry Point ──────────────────────────────────────────────────────────────

def analyze(flight_data, session_index=0, flight_style="balanced", current_pids=None,
            progress=None, config=None, flight_pids=None, corrupted_frames=0):
    """Detect steps, measure responses, score them and recommend PID/F changes.

    current_pids are the device's values; recommendations move away from
    them. flight_pids (as logged) anchor the moves when given. Few steps or
    a corrupted session (corrupted_frames) lower the data quality, and poor
    data lowers the confidence of every recommendation.
    Raises InsufficientDataError when no step is found.
    """
    started = time.perf_counter()
    cfg = merge_config(STEP_DEFAULTS, config)
    if flight_style not in cfg["styles"]:
        raise ValueError(f"unknown flight style '{flight_style}'")
    pids = {axis: dict(DEFAULT_PIDS[axis], **(current_pids or {}).get(axis, {}))
            for axis in AXIS_NAMES}

    report(progress, step="detecting", percent=10)
    steps = detect_steps(flight_data, config)
    if not steps:
        raise InsufficientDataError("no step inputs found")
    log.info(f"Steps: {len(steps)} detected")

    report(progress, step="measuring", percent=30)
    per_axis = {axis: [] for axis in AXIS_NAMES}
    for n, step in enumerate(steps):
        a = step.axis
        per_axis[AXIS_NAMES[a]].append(compute_step_response(
            flight_data.setpoint[a].values, flight_data.gyro[a].values, step,
            flight_data.sample_rate, config))
        report(progress, step="measuring", percent=30 + round(40 * (n + 1) / len(steps)))

    report(progress, step="scoring", percent=75)
    profiles = {axis: aggregate_axis(per_axis[axis], config) for axis in AXIS_NAMES}
    quality = score_step_data(profiles, flight_data.frame_count, corrupted_frames, cfg)
    log.info(f"Step data quality: {quality['score']}/100 ({quality['tier']})")

    report(progress, step="recommending", percent=85)
    recs = downgrade_confidence(recommend_pids(profiles, pids, flight_style, flight_pids, config),
                                quality["tier"])
    summary = summarize(profiles, recs)
    report(progress, step="recommending", percent=100)

    result = dict(profiles)
    result.update({
        "steps": steps,
        "steps_detected": len(steps),
        "recommendations": recs,
        "summary": summary,
        "analysis_time_ms": int((time.perf_counter() - started) * 1000),
        "session_index": session_index,
        "flight_style": flight_style,
        "current_pids": pids,
        "data_quality": quality,
    })
    return result
