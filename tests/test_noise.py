import numpy as np
import pytest

import bb_noise
from bb_common import InsufficientDataError
from logbuilder import hover_flight, make_flight_data


@pytest.fixture(scope="module")
def hover():
    return hover_flight()


@pytest.fixture(scope="module")
def result(hover):
    return bb_noise.analyze(hover)


def test_normalize_throttle_scales():
    out = bb_noise.normalize_throttle([1500, 500, 50, 0.5])
    assert out.tolist() == pytest.approx([0.5, 0.5, 0.5, 0.5])


def test_steady_segment_covers_hover(hover):
    segments = bb_noise.find_steady_segments(hover)
    assert len(segments) == 1
    seg = segments[0]
    assert seg["end"] - seg["start"] == hover.frame_count
    assert seg["avg_throttle"] == pytest.approx(0.5)


def test_no_segment_outside_throttle_band():
    idle = hover_flight(seconds=2.0, throttle=1050.0)
    assert bb_noise.find_steady_segments(idle) == []
    with pytest.raises(InsufficientDataError):
        bb_noise.analyze(idle)


def test_peaks_found_at_tones(result):
    roll = result["noise"]["roll"]
    top = sorted(p.frequency for p in roll.peaks[:2])
    assert top[0] == pytest.approx(120, abs=5)
    assert top[1] == pytest.approx(340, abs=5)
    assert roll.peaks[0].type == "frame_resonance"
    assert result["noise"]["overall_level"] != "high"


def test_recommendations_follow_resonance(result):
    recs = {r.setting: r for r in result["recommendations"]}
    assert recs["gyro_lpf1_static_hz"].current == 250
    assert recs["gyro_lpf1_static_hz"].recommended == 100
    assert recs["dterm_lpf1_static_hz"].recommended == 100
    assert recs["dyn_notch_min_hz"].recommended == 100
    for rec in result["recommendations"]:
        assert rec.recommended != rec.current
        assert rec.confidence in ("high", "medium", "low")


def test_recommendations_are_repeatable(hover, result):
    again = bb_noise.analyze(hover)
    assert again["recommendations"] == result["recommendations"]
    assert again["summary"] == result["summary"]


def test_result_shape(result):
    assert result["segments_used"] == 1
    assert result["session_index"] == 0
    assert set(result["noise"]) == {"roll", "pitch", "yaw", "overall_level"}
    assert result["current_settings"] == bb_noise.DEFAULT_FILTER_SETTINGS


def test_empty_session_is_insufficient():
    empty = make_flight_data([np.array([])] * 3, [np.array([])] * 4, 1000.0)
    with pytest.raises(InsufficientDataError):
        bb_noise.analyze(empty)


def test_config_override_rejects_unknown_key(hover):
    with pytest.raises(KeyError):
        bb_noise.analyze(hover, config={"no_such_threshold": 1})


def test_filter_settings_from_header_aliases():
    settings = bb_noise.filter_settings_from_header({"gyro_lowpass_hz": "200", "dyn_notch_min_hz": "90"})
    assert settings["gyro_lpf1_static_hz"] == 200
    assert settings["dyn_notch_min_hz"] == 90
    assert settings["dterm_lpf1_static_hz"] == bb_noise.DEFAULT_FILTER_SETTINGS["dterm_lpf1_static_hz"]


def test_classify_harmonic_series():
    cfg = bb_noise.NOISE_DEFAULTS
    freqs = [150.0, 300.0, 450.0]
    assert bb_noise.classify_peak(300.0, freqs, cfg) == "motor_harmonic"
    assert bb_noise.classify_peak(120.0, [120.0], cfg) == "frame_resonance"
    assert bb_noise.classify_peak(700.0, [700.0], cfg) == "electrical"


def test_low_noise_raises_cutoffs():
    profile = bb_noise.AxisNoiseProfile(np.array([]), np.array([]), -70.0, [])
    noise = {"roll": profile, "pitch": profile, "yaw": profile, "overall_level": "low"}
    current = dict(bb_noise.DEFAULT_FILTER_SETTINGS)
    recs = {r.setting: r.recommended for r in
            bb_noise.recommend_filters(noise, current, bb_noise.NOISE_DEFAULTS)}
    assert recs == {"gyro_lpf1_static_hz": 300, "dterm_lpf1_static_hz": 180}


def floor_noise(floor_db, level):
    profile = bb_noise.AxisNoiseProfile(np.array([]), np.array([]), floor_db, [])
    return {"roll": profile, "pitch": profile, "yaw": profile, "overall_level": level}


@pytest.mark.parametrize("floor_db, level, confidence", [
    (-10.0, "high", "high"),
    (-28.0, "high", "medium"),
    (-70.0, "low", "high"),
    (-55.0, "low", "medium"),
])
def test_floor_confidence_follows_margin(floor_db, level, confidence):
    recs = bb_noise.recommend_filters(floor_noise(floor_db, level),
                                      dict(bb_noise.DEFAULT_FILTER_SETTINGS), bb_noise.NOISE_DEFAULTS)
    assert {r.setting for r in recs} == {"gyro_lpf1_static_hz", "dterm_lpf1_static_hz"}
    assert {r.confidence for r in recs} == {confidence}


def ramp_flight(sample_rate=1000.0):
    """2 s at 1200, throttle ramp to 1800 over 4 s, 2 s at 1800."""
    throttle = np.concatenate([np.full(2000, 1200.0), np.linspace(1200.0, 1800.0, 4000),
                               np.full(2000, 1800.0)])
    n = len(throttle)
    zeros = np.zeros(n)
    return make_flight_data([zeros] * 3, [zeros, zeros, zeros, throttle], sample_rate)


def test_throttle_sweep_found_on_ramp():
    sweeps = bb_noise.find_throttle_sweeps(ramp_flight())
    assert sweeps
    sweep = sweeps[0]
    assert sweep["range"] >= 0.4
    assert sweep["start"] < 2500
    assert sweep["end"] > 5500
    assert 0.2 < sweep["avg_throttle"] < 0.8


def test_no_throttle_sweep_in_hover(hover):
    assert bb_noise.find_throttle_sweeps(hover) == []


def test_data_quality_in_result(result):
    quality = result["data_quality"]
    assert quality["tier"] == "good"
    assert set(quality["sub_scores"]) == {"segments", "hover_time", "throttle_coverage", "integrity"}
    assert quality["sub_scores"]["integrity"] == 100
    assert result["sweeps_found"] == 0


def test_corrupted_session_lowers_confidence(hover, result):
    damaged = bb_noise.analyze(hover, corrupted_frames=hover.frame_count)
    assert damaged["data_quality"]["tier"] == "poor"
    assert damaged["data_quality"]["sub_scores"]["integrity"] == 0
    clean = {r.setting: r for r in result["recommendations"]}
    lowered = {"high": "medium", "medium": "low", "low": "low"}
    assert set(r.setting for r in damaged["recommendations"]) == set(clean)
    for rec in damaged["recommendations"]:
        assert rec.recommended == clean[rec.setting].recommended
        assert rec.confidence == lowered[clean[rec.setting].confidence]


def test_short_hover_scores_lower(result):
    short = bb_noise.analyze(hover_flight(seconds=3.0))
    assert short["data_quality"]["score"] < result["data_quality"]["score"]
    assert short["data_quality"]["sub_scores"]["hover_time"] < 100
