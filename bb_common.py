"""
Shared pieces for the bbtune modules: axis naming, the Recommendation record,
the error taxonomy, small helpers for progress and threshold overrides, and
the data quality score both analyzers attach to their results.
"""

import copy
import logging

log = logging.getLogger("bbtune")

AXIS_NAMES = ["roll", "pitch", "yaw"]

# Recommendation.impact values
IMPACT_NOISE = "noise"
IMPACT_LATENCY = "latency"
IMPACT_BOTH = "both"
IMPACT_STABILITY = "stability"
IMPACT_RESPONSE = "response"

CONFIDENCE_LEVELS = ("high", "medium", "low")


# ─── Errors ──────────────────────────────────────────────────────────────────

class BBTuneError(Exception):
    """Base class for errors raised by bbtune."""


class InsufficientDataError(BBTuneError):
    """The log does not hold enough usable data for an analysis.

    This is a user-facing, retryable condition (fly again, pick another
    session), not a crash.
    """


class ChannelError(BBTuneError):
    """A device command channel rejected or failed a write."""


class ConnectionLostError(ChannelError):
    """The link to the flight controller went away."""


# ─── Recommendation ──────────────────────────────────────────────────────────

class Recommendation:
    def __init__(self, setting, current, recommended, reason,
                 impact=IMPACT_BOTH, confidence="medium"):
        self.setting = setting
        self.current = current
        self.recommended = recommended
        self.reason = reason
        self.impact = impact
        self.confidence = confidence

    def as_dict(self):
        return {
            "setting": self.setting,
            "current": self.current,
            "recommended": self.recommended,
            "reason": self.reason,
            "impact": self.impact,
            "confidence": self.confidence,
        }

    def __eq__(self, other):
        if not isinstance(other, Recommendation):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def __hash__(self):
        return hash((self.setting, self.current, self.recommended))

    def __repr__(self):
        return (f"<{self.confidence} {self.setting}: "
                f"{self.current} -> {self.recommended}>")


# ─── Helpers ─────────────────────────────────────────────────────────────────

def clamp(value, lo, hi):
    return max(lo, min(hi, value))


def merge_config(defaults, overrides=None):
    """Return a deep copy of *defaults* updated with *overrides*.

    Nested dicts are merged key by key so a caller can override a single
    threshold of one flight style without restating the others.
    """
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if key not in merged:
            raise KeyError(f"unknown threshold '{key}'")
        if isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def report(progress, **event):
    """Forward a progress event to an optional callback."""
    if progress is not None:
        progress(event)


# ─── Data Quality ────────────────────────────────────────────────────────────

QUALITY_TIERS = ((80, "excellent"), (60, "good"), (40, "fair"), (0, "poor"))


def ramp_score(value, zero_at, full_at):
    """0..100, linear between *zero_at* and *full_at* (either order)."""
    if full_at == zero_at:
        return 100 if value >= full_at else 0
    frac = (value - zero_at) / (full_at - zero_at)
    return int(round(clamp(frac, 0.0, 1.0) * 100))


def integrity_score(corrupted_frames, frame_count, max_ratio):
    """100 for a clean session, 0 once corruption reaches *max_ratio* of all frames."""
    total = frame_count + corrupted_frames
    ratio = corrupted_frames / total if total else 0.0
    return ramp_score(ratio, max_ratio, 0.0)


def score_quality(sub_scores, weights):
    """Weighted 0..100 input quality with its tier.

    Returns {"score", "tier", "sub_scores"}.
    """
    total = sum(weights.values())
    score = int(round(sum(sub_scores[k] * w for k, w in weights.items()) / total))
    tier = next(name for floor, name in QUALITY_TIERS if score >= floor)
    return {"score": score, "tier": tier, "sub_scores": dict(sub_scores)}


def downgrade_confidence(recs, tier):
    """Poor input data lowers every recommendation by one confidence level."""
    if tier != "poor":
        return list(recs)
    out = []
    for rec in recs:
        idx = CONFIDENCE_LEVELS.index(rec.confidence)
        lowered = CONFIDENCE_LEVELS[min(idx + 1, len(CONFIDENCE_LEVELS) - 1)]
        out.append(Recommendation(rec.setting, rec.current, rec.recommended, rec.reason,
                                  rec.impact, lowered))
    return out
