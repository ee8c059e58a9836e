#!/usr/bin/env python3
"""
bbtune - blackbox noise and step-response tuner.

Decodes a blackbox log, analyses gyro noise and stick-step response for one
session and prints concrete "change X from A to B" recommendations.
Optionally writes them to the flight controller and saves.

Usage:
    python bb_tuner.py LOG00012.BFL
    python bb_tuner.py LOG00012.BFL --session 1 --style aggressive --chart tune.png
    python bb_tuner.py LOG00012.BFL --device /dev/ttyACM0 --apply --snapshot-dir ./snapshots
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime

import numpy as np

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

import bb_noise
import bb_steps
from bb_apply import ApplyOrchestrator
from bb_common import AXIS_NAMES, BBTuneError, InsufficientDataError, merge_config
from bb_decoder import DECODER_LIMITS, decode_file

VERSION = "1.0.0"

AXIS_COLORS = ["#FF6B6B", "#4ECDC4", "#FFD93D"]
R, B, C, G, Y, RED, DIM = "\033[0m", "\033[1m", "\033[96m", "\033[92m", "\033[93m", "\033[91m", "\033[2m"


# ─── Config ───────────────────────────────────────────────────────────────────

def load_config(path):
    """Threshold overrides: {"decoder": {...}, "noise": {...}, "steps": {...}}."""
    if not path:
        return {}
    with open(path) as f:
        cfg = json.load(f)
    sections = {"decoder": DECODER_LIMITS, "noise": bb_noise.NOISE_DEFAULTS,
                "steps": bb_steps.STEP_DEFAULTS}
    unknown = set(cfg) - set(sections)
    if unknown:
        raise ValueError(f"unknown config section(s): {', '.join(sorted(unknown))}")
    for name, defaults in sections.items():
        try:
            merge_config(defaults, cfg.get(name))
        except KeyError as e:
            raise ValueError(f"{name}: {e.args[0]}") from e
    return cfg


# ─── Charts ───────────────────────────────────────────────────────────────────

def setup_dark_style():
    plt.rcParams.update({
        "figure.facecolor": "#1a1b26", "axes.facecolor": "#1a1b26",
        "axes.edgecolor": "#565f89", "axes.labelcolor": "#c0caf5",
        "text.color": "#c0caf5", "xtick.color": "#565f89", "ytick.color": "#565f89",
        "grid.color": "#24283b", "grid.alpha": 0.6, "font.size": 10,
        "axes.titlesize": 12, "axes.grid": True,
    })


def save_chart(path, noise_result=None, step_result=None):
    """Spectra on the top row, step traces on the bottom row."""
    rows = [r for r in (noise_result, step_result) if r is not None]
    if not rows:
        return None
    setup_dark_style()
    fig, axes = plt.subplots(len(rows), 3, figsize=(16, 4.5 * len(rows)), squeeze=False)
    row = 0
    if noise_result is not None:
        for i, axis in enumerate(AXIS_NAMES):
            ax = axes[row][i]
            prof = noise_result["noise"][axis]
            ax.plot(prof.frequencies, prof.magnitudes, color=AXIS_COLORS[i], linewidth=1.1)
            ax.axhline(prof.noise_floor_db, color="#565f89", linestyle=":", linewidth=0.8)
            for peak in prof.peaks[:3]:
                ax.axvline(peak.frequency, color="#ff9e64", alpha=0.6, linestyle="--", linewidth=0.8)
                ax.annotate(f"{peak.frequency:.0f}Hz", xy=(peak.frequency, prof.noise_floor_db + peak.amplitude),
                            fontsize=8, color="#ff9e64", ha="center", va="bottom",
                            xytext=(0, 6), textcoords="offset points")
            ax.set_title(f"{axis.capitalize()} gyro spectrum", color=AXIS_COLORS[i], fontweight="bold")
            ax.set_xlabel("Frequency (Hz)")
            if i == 0:
                ax.set_ylabel("Magnitude (dB)")
        row += 1
    if step_result is not None:
        for i, axis in enumerate(AXIS_NAMES):
            ax = axes[row][i]
            prof = step_result[axis]
            for resp in prof["responses"][:10]:
                t = resp.trace["time_ms"]
                ax.plot(t, resp.trace["setpoint"], color="#565f89", linewidth=1.0, alpha=0.6)
                ax.plot(t, resp.trace["gyro"], color=AXIS_COLORS[i], linewidth=1.0, alpha=0.8)
            ax.set_title(f"{axis.capitalize()} steps: OS {prof['mean_overshoot']:.1f}% | "
                         f"rise {prof['mean_rise_time_ms']:.0f}ms",
                         color=AXIS_COLORS[i], fontweight="bold")
            ax.set_xlabel("Time (ms)")
            if i == 0:
                ax.set_ylabel("deg/s")
    fig.tight_layout()
    fig.savefig(path, dpi=110, bbox_inches="tight", facecolor=fig.get_facecolor(), edgecolor="none")
    plt.close(fig)
    return path


# ─── JSON ─────────────────────────────────────────────────────────────────────

def _jsonable(obj):
    if hasattr(obj, "as_dict"):
        return obj.as_dict()
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(v) for v in obj]
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return obj


def result_to_json(session, noise_result, step_result, errors):
    step = None
    if step_result is not None:
        step = {k: v for k, v in step_result.items() if k not in AXIS_NAMES}
        for axis in AXIS_NAMES:
            prof = step_result[axis]
            step[axis] = {k: v for k, v in prof.items() if k != "responses"}
            step[axis]["responses"] = len(prof["responses"])
    return _jsonable({
        "generated": datetime.now().isoformat(timespec="seconds"),
        "session": {
            "index": session.index,
            "firmware": session.header.firmware_revision,
            "craft_name": session.header.craft_name,
            "frames": session.flight_data.frame_count,
            "duration_s": round(session.flight_data.duration, 2),
            "sample_rate": round(session.flight_data.sample_rate, 1),
            "corrupted_frames": session.corrupted_frame_count,
            "warnings": session.warnings,
        },
        "noise": noise_result,
        "steps": step,
        "errors": errors,
    })


# ─── Terminal Output ──────────────────────────────────────────────────────────

def print_sessions(sessions, corrupted):
    print(f"\n  {B}SESSIONS:{R}")
    for s in sessions:
        fd = s.flight_data
        flag = f"  {Y}{s.corrupted_frame_count} corrupt{R}" if s.corrupted_frame_count else ""
        print(f"    [{s.index}] {fd.duration:6.1f}s  {fd.frame_count:>8,} frames @ {fd.sample_rate:.0f}Hz{flag}")
    if corrupted:
        print(f"  {DIM}{corrupted} corrupt frame(s) skipped in total{R}")


def print_recommendations(title, recs):
    print(f"\n{B}{C}{'─' * 70}{R}")
    if not recs:
        print(f"  {B}{title}:{R} {G}no changes{R}")
        return
    print(f"  {B}{title} - {len(recs)} change{'s' if len(recs) != 1 else ''}:{R}")
    for rec in recs:
        conf = {"high": G, "medium": Y}.get(rec.confidence, DIM)
        print(f"    {B}{rec.setting}{R}: {rec.current} -> {B}{rec.recommended}{R}  "
              f"{conf}[{rec.confidence}]{R}")
        print(f"      {DIM}{rec.reason}{R}")


def print_quality(quality):
    color = {"excellent": G, "good": G, "fair": Y}.get(quality["tier"], RED)
    print(f"    Data quality {color}{quality['score']}/100 ({quality['tier']}){R}")
    if quality["tier"] == "poor":
        print(f"    {DIM}Confidence lowered one level: fly longer or check the log for corruption.{R}")


def print_report(session, noise_result, step_result, errors):
    hdr = session.header
    fd = session.flight_data
    print(f"\n{B}{C}{'═' * 70}{R}")
    print(f"  {DIM}{hdr.firmware_revision or hdr.product} | session {session.index} | "
          f"{fd.duration:.1f}s | {fd.sample_rate:.0f}Hz{R}")
    if hdr.craft_name:
        print(f"  {DIM}Craft: {hdr.craft_name}{R}")
    for w in session.warnings[:5]:
        print(f"  {Y}! {w}{R}")

    if noise_result is not None:
        noise = noise_result["noise"]
        print(f"\n  {B}NOISE:{R} {noise['overall_level']}  "
              f"{DIM}({noise_result['segments_used']} hover segment(s)){R}")
        print_quality(noise_result["data_quality"])
        for axis in AXIS_NAMES:
            prof = noise[axis]
            peaks = ", ".join(f"{p.frequency:.0f}Hz +{p.amplitude:.0f}dB ({p.type})" for p in prof.peaks[:3])
            print(f"    {axis.capitalize():6s} floor {prof.noise_floor_db:6.1f}dB  {DIM}{peaks or 'no peaks'}{R}")
        print(f"  {noise_result['summary']}")
        print_recommendations("FILTERS", noise_result["recommendations"])
    if step_result is not None:
        print(f"\n  {B}STEP RESPONSE:{R} {step_result['steps_detected']} steps, style {step_result['flight_style']}")
        print_quality(step_result["data_quality"])
        for axis in AXIS_NAMES:
            prof = step_result[axis]
            if not prof["responses"]:
                print(f"    {axis.capitalize():6s} {DIM}no steps{R}")
                continue
            print(f"    {axis.capitalize():6s} OS {prof['mean_overshoot']:5.1f}%  rise {prof['mean_rise_time_ms']:5.1f}ms  "
                  f"settle {prof['mean_settling_time_ms']:5.1f}ms  lat {prof['mean_latency_ms']:4.1f}ms  "
                  f"ring {prof['max_ringing']}  {DIM}({len(prof['responses'])} steps){R}")
        pids = step_result["current_pids"]
        print(f"  {DIM}Current: " + "  ".join(
            f"{a[0].upper()} {pids[a]['P']}/{pids[a]['I']}/{pids[a]['D']}/{pids[a]['F']}" for a in AXIS_NAMES) + R)
        print(f"  {step_result['summary']}")
        print_recommendations("PID", step_result["recommendations"])
    for stage, message in errors.items():
        print(f"\n  {Y}{stage}: {message}{R}")
    print()


# ─── Apply ────────────────────────────────────────────────────────────────────

def split_step_recs(recs):
    pid = [r for r in recs if not r.setting.endswith("_f")]
    ff = [r for r in recs if r.setting.endswith("_f")]
    return pid, ff


def run_apply(link, filter_recs, step_recs, snapshot_dir=None, assume_yes=False):
    from bb_msp import CliLineChannel, DiffSnapshotStore, MspParamChannel

    pid_recs, ff_recs = split_step_recs(step_recs)
    total = len(filter_recs) + len(pid_recs) + len(ff_recs)
    if total == 0:
        print("  Nothing to apply.")
        return True

    snapshots = DiffSnapshotStore(link, snapshot_dir) if snapshot_dir else None
    orchestrator = ApplyOrchestrator(CliLineChannel(link), MspParamChannel(link),
                                     snapshots=snapshots, connection=link)
    orchestrator.confirm()
    if not assume_yes:
        answer = input(f"  Write {total} change{'s' if total != 1 else ''} to the FC and save? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            orchestrator.cancel()
            print("  Cancelled.")
            return True

    def show(event):
        print(f"  [{event['percent']:3d}%] {event['stage']}: {event['message']}")

    result = orchestrator.apply(filter_recs, pid_recs, ff_recs,
                                create_snapshot=snapshots is not None, progress=show)
    if result.success:
        print(f"\n  {G}Applied {result.applied_filters} filter and {result.applied_pids} PID change(s).{R}")
        if result.snapshot_id:
            print(f"  {DIM}Snapshot: {result.snapshot_id}{R}")
        if result.rebooted:
            print(f"  {DIM}FC is rebooting.{R}")
    else:
        print(f"\n  {RED}Apply failed at {result.failed_stage}: {result.error}{R}")
        print(f"  {DIM}{result.applied_filters} filter and {result.applied_pids} PID change(s) "
              f"were written but not saved.{R}")
    return result.success


# ─── Main ─────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description=f"bbtune v{VERSION} - blackbox noise and step-response tuner")
    parser.add_argument("logfile", help="Blackbox log (.bbl/.bfl or raw flash dump)")
    parser.add_argument("--session", type=int, default=None,
                        help="Session index to analyse (default: the longest)")
    parser.add_argument("--style", choices=sorted(bb_steps.PID_STYLE_THRESHOLDS), default="balanced",
                        help="Flight style for step-response targets (default: balanced)")
    parser.add_argument("--config", metavar="JSON", help="Threshold overrides")
    parser.add_argument("--chart", metavar="PNG", help="Save spectrum and step charts")
    parser.add_argument("--json", metavar="OUT", help="Save results as JSON")
    parser.add_argument("--device", metavar="PORT", help="FC serial port, for current PIDs and --apply")
    parser.add_argument("--apply", action="store_true", help="Write recommendations to the FC and save")
    parser.add_argument("--snapshot-dir", metavar="DIR", help="Save a 'diff all' snapshot here before applying")
    parser.add_argument("--yes", action="store_true", help="Do not ask before applying")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="  %(message)s")

    if args.apply and not args.device:
        parser.error("--apply needs --device")
    if not os.path.isfile(args.logfile):
        print(f"  ERROR: File not found: {args.logfile}")
        sys.exit(1)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"  ERROR: config: {e}")
        sys.exit(1)

    print(f"\n  ▲ bbtune v{VERSION}")

    def decode_progress(event):
        if sys.stdout.isatty() and event.get("total_bytes"):
            pct = 100 * event["bytes_processed"] // event["total_bytes"]
            print(f"\r  Decoding... {pct:3d}%", end="", flush=True)

    sessions, corrupted, _ = decode_file(args.logfile, progress=decode_progress,
                                         limits=cfg.get("decoder"))
    if sys.stdout.isatty():
        print()
    if not sessions:
        print("  ERROR: No decodable flight sessions in this log.")
        sys.exit(1)
    print_sessions(sessions, corrupted)

    if args.session is None:
        session = max(sessions, key=lambda s: s.flight_data.frame_count)
    elif 0 <= args.session < len(sessions):
        session = sessions[args.session]
    else:
        print(f"  ERROR: Session {args.session} not found (0..{len(sessions) - 1}).")
        sys.exit(1)

    link = None
    if args.device:
        from bb_msp import FCLink, MspParamChannel
        link = FCLink(args.device)
        try:
            link.open()
        except BBTuneError as e:
            print(f"  ERROR: {e}")
            sys.exit(1)

    try:
        flight_pids = bb_steps.extract_flight_pids(session.header.raw)
        current_pids = flight_pids
        if link is not None:
            info = link.get_info()
            if info:
                print(f"  Connected: {info['craft_name'] or '(unnamed)'} - {info['firmware']}")
            current_pids = MspParamChannel(link).read_pids() or flight_pids

        errors = {}
        noise_result = step_result = None
        try:
            noise_result = bb_noise.analyze(
                session.flight_data, session.index,
                current_settings=bb_noise.filter_settings_from_header(session.header.raw),
                config=cfg.get("noise"), corrupted_frames=session.corrupted_frame_count)
        except InsufficientDataError as e:
            errors["noise"] = str(e)
        try:
            step_result = bb_steps.analyze(session.flight_data, session.index, args.style,
                                           current_pids=current_pids, config=cfg.get("steps"),
                                           flight_pids=flight_pids,
                                           corrupted_frames=session.corrupted_frame_count)
        except InsufficientDataError as e:
            errors["steps"] = str(e)

        print_report(session, noise_result, step_result, errors)

        if args.chart and save_chart(args.chart, noise_result, step_result):
            print(f"  Chart: {args.chart}")
        if args.json:
            with open(args.json, "w") as f:
                json.dump(result_to_json(session, noise_result, step_result, errors), f, indent=2)
            print(f"  JSON: {args.json}")

        if args.apply:
            filter_recs = noise_result["recommendations"] if noise_result else []
            step_recs = step_result["recommendations"] if step_result else []
            if not run_apply(link, filter_recs, step_recs, args.snapshot_dir, args.yes):
                sys.exit(2)
    except KeyboardInterrupt:
        print("\n  Interrupted.")
        sys.exit(1)
    except (BBTuneError, OSError) as e:
        print(f"  ERROR: {e}")
        sys.exit(1)
    finally:
        if link is not None:
            link.close()


if __name__ == "__main__":
    main()
