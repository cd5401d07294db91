#!/usr/bin/env python3
"""
Betaflight Blackbox Analyzer
============================
Decodes a Betaflight blackbox log, shows the gyro noise spectrum per axis and
turns detected issues and recommendations into a paste-ready CLI script.

Issues and recommendations come from an external detector as JSON. This tool
correlates issues across axes, merges overlapping recommendations, resolves
every change against the values recorded in the log (or imported from the
CLI) and exports `set` commands.

Usage:
    python bf_blackbox_analyzer.py LOG00001.BFL
    python bf_blackbox_analyzer.py LOG00001.BFL --issues issues.json \\
        --recommendations recs.json --settings diff_all.txt --cli-out tune.txt
    python bf_blackbox_analyzer.py LOG00001.BFL --chart spectrum.png --state state.json
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from bf_analysis_model import AXES, ModelError, load_issues, load_recommendations
from bf_blackbox_decoder import BlackboxDecodeError, count_logs, parse_bbl_buffer
from bf_cli_export import collect_resolved_values, generate_cli_commands, generate_get_script
from bf_cross_axis import correlate_axes, format_issue_type
from bf_recommendation_dedup import deduplicate_recommendations
from bf_settings import load_settings_file
from bf_spectrum import SpectrumCache

VERSION = "1.0.0"

AXIS_COLORS = {"roll": "#FF6B6B", "pitch": "#4ECDC4", "yaw": "#FFD93D"}


def _enable_ansi_colors():
    if os.environ.get("NO_COLOR") is not None:
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_ANSI_ENABLED = _enable_ansi_colors()


def _colors():
    """Return (R, B, C, G, Y, RED, DIM) color codes."""
    if _ANSI_ENABLED:
        return ("\033[0m", "\033[1m", "\033[96m", "\033[92m",
                "\033[93m", "\033[91m", "\033[2m")
    return ("", "", "", "", "", "", "")


# ─── Terminal Output ──────────────────────────────────────────────────────────

def _fmt(value, unit=""):
    return "?" if value is None else f"{value}{unit}"


def print_log_summary(metadata, frames):
    R, B, C, G, Y, RED, DIM = _colors()
    print(f"\n{B}{C}{'═'*70}{R}")
    print(f"  {B}{metadata.firmware_type} {metadata.firmware_version}{R}"
          + (f" {DIM}({metadata.firmware_revision}){R}" if metadata.firmware_revision else ""))
    if metadata.craft_name:
        print(f"  {DIM}Craft: {metadata.craft_name}{R}")
    print(f"  {DIM}{metadata.duration:.1f}s | {metadata.looptime:.0f}Hz logging | "
          f"{metadata.gyro_rate:.0f}Hz gyro | {len(frames):,} frames | "
          f"{metadata.motor_count} motors{R}")
    if metadata.debug_mode:
        print(f"  {DIM}Debug mode: {metadata.debug_mode}{R}")

    pid = metadata.pid_profile
    if pid is not None:
        print(f"\n  {B}PID PROFILE:{R}")
        for ax in AXES:
            print(f"    {ax.capitalize():6s} P={_fmt(pid.get(f'{ax}_p')):>3}  "
                  f"I={_fmt(pid.get(f'{ax}_i')):>3}  D={_fmt(pid.get(f'{ax}_d')):>3}  "
                  f"Dmin={_fmt(pid.get(f'{ax}_d_min')):>3}  FF={_fmt(pid.get(f'{ax}_ff')):>3}")
        if pid.master_multiplier is not None:
            print(f"    Master multiplier: {pid.master_multiplier}")

    fs = metadata.filter_settings
    if fs is not None:
        print(f"\n  {B}FILTERS:{R}")
        print(f"    Gyro LPF1: {_fmt(fs.gyro_lpf1_cutoff, 'Hz')}  LPF2: {_fmt(fs.gyro_lpf2_cutoff, 'Hz')}"
              f"  D-term LPF1: {_fmt(fs.dterm_lpf1_cutoff, 'Hz')}  LPF2: {_fmt(fs.dterm_lpf2_cutoff, 'Hz')}")
        if fs.dynamic_notch_count is not None:
            print(f"    Dyn notch: {fs.dynamic_notch_count}× Q={_fmt(fs.dynamic_notch_q)} "
                  f"{_fmt(fs.dynamic_notch_min_hz)}-{_fmt(fs.dynamic_notch_max_hz)}Hz")
        if fs.rpm_filter_harmonics is not None:
            print(f"    RPM filter: {fs.rpm_filter_harmonics} harmonics, "
                  f"min {_fmt(fs.rpm_filter_min_hz, 'Hz')}")


def print_spectrum_report(views, spectra_energy):
    R, B, C, G, Y, RED, DIM = _colors()
    print(f"\n{B}{C}{'─'*70}{R}")
    print(f"  {B}GYRO SPECTRUM:{R}")
    for axis, view in views.items():
        if view.empty:
            print(f"    {axis.capitalize():6s} {DIM}not enough samples{R}")
            continue
        peaks = ", ".join(f"{p.frequency:.0f}Hz" for p in view.peaks) or "none"
        print(f"    {axis.capitalize():6s} peaks: {peaks}  {DIM}(display to {view.display_max:.0f}Hz, "
              f"Nyquist {view.nyquist:.0f}Hz){R}")
        energy = spectra_energy.get(axis)
        if energy:
            total = sum(energy.values()) or 1.0
            print(f"           {DIM}energy low {energy['low']/total:.0%} | "
                  f"mid {energy['mid']/total:.0%} | high {energy['high']/total:.0%}{R}")


def print_cross_axis_report(annotated):
    R, B, C, G, Y, RED, DIM = _colors()
    seen = {}
    for issue in annotated:
        if issue.cross_axis_context and issue.type not in seen:
            seen[issue.type] = issue.cross_axis_context
    if not seen:
        return
    print(f"\n{B}{C}{'─'*70}{R}")
    print(f"  {B}CROSS-AXIS PATTERNS:{R}")
    for issue_type, ctx in seen.items():
        color = RED if ctx.pattern in ("allAxes", "asymmetric") else Y
        print(f"    {color}▸ {format_issue_type(issue_type)}{R} [{', '.join(ctx.affected_axes)}]")
        print(f"      {DIM}{ctx.description}{R}")


def print_recommendations(recs):
    R, B, C, G, Y, RED, DIM = _colors()
    if not recs:
        return
    print(f"\n{B}{C}{'─'*70}{R}")
    print(f"  {B}RECOMMENDATIONS — {len(recs)}:{R}")
    print(f"{B}{C}{'─'*70}{R}")
    for i, rec in enumerate(sorted(recs, key=lambda r: -r.priority), 1):
        tag = f" {Y}[hardware]{R}" if rec.category == "hardware" else ""
        print(f"  {B}{i}. {rec.title}{R}{tag} {DIM}(p{rec.priority}, {rec.confidence:.0%}){R}")
        for change in rec.changes:
            axis = f"[{change.axis}]" if change.axis else ""
            print(f"     {G}{change.parameter}{axis} {change.recommended_change}{R}"
                  + (f" {DIM}{change.explanation}{R}" if change.explanation else ""))
        if rec.conflict_context:
            print(f"     {DIM}{rec.conflict_context}{R}")


def print_cli(cli_text, get_script):
    R, B, C, G, Y, RED, DIM = _colors()
    print(f"\n{B}{C}{'─'*70}{R}")
    print(f"  {B}CLI COMMANDS:{R}")
    for line in cli_text.splitlines():
        color = DIM if line.startswith("#") else G
        print(f"    {color}{line}{R}")
    if get_script:
        print(f"\n  {B}MISSING VALUES — paste into the CLI and re-run with --settings:{R}")
        for line in get_script.splitlines():
            print(f"    {DIM}{line}{R}")


# ─── Chart Generation ─────────────────────────────────────────────────────────

def setup_dark_style():
    plt.rcParams.update({
        "figure.facecolor": "#1a1b26", "axes.facecolor": "#1a1b26",
        "axes.edgecolor": "#565f89", "axes.labelcolor": "#c0caf5",
        "text.color": "#c0caf5", "xtick.color": "#565f89", "ytick.color": "#565f89",
        "grid.color": "#24283b", "grid.alpha": 0.6, "font.size": 10,
        "axes.titlesize": 13, "axes.grid": True,
    })


def create_spectrum_chart(views, filepath, title=None):
    setup_dark_style()
    shown = [(axis, v) for axis, v in views.items() if not v.empty]
    if not shown:
        return None
    fig, axes = plt.subplots(1, len(shown), figsize=(5.5 * len(shown), 4.5), squeeze=False)
    fig.suptitle(title or "Gyro Spectrum", fontsize=14, color="#c0caf5", fontweight="bold", y=1.02)
    for ax, (axis, view) in zip(axes[0], shown):
        color = AXIS_COLORS[axis]
        ax.plot(view.frequencies, view.magnitudes, color=color, linewidth=1.2, alpha=0.9)
        ax.fill_between(view.frequencies, view.magnitudes, 0, alpha=0.15, color=color)
        for peak in view.peaks[:3]:
            ax.axvline(peak.frequency, color="#ff9e64", alpha=0.6, linestyle="--", linewidth=0.8)
            ax.annotate(f"{peak.frequency:.0f}Hz", xy=(peak.frequency, peak.magnitude),
                        fontsize=8, color="#ff9e64", ha="center", va="bottom",
                        xytext=(0, 8), textcoords="offset points")
        ax.set_title(axis.capitalize(), color=color, fontweight="bold")
        ax.set_xlabel("Frequency (Hz)")
        ax.set_xlim(0, view.display_max)
    axes[0][0].set_ylabel("Magnitude (deg/s)")
    fig.tight_layout()
    fig.savefig(filepath, dpi=120, bbox_inches="tight", facecolor=fig.get_facecolor(), edgecolor="none")
    plt.close(fig)
    return filepath


# ─── State file ───────────────────────────────────────────────────────────────

def save_state(filepath, metadata, views, annotated, recs, resolved, profile=None):
    state = {
        "version": VERSION,
        "timestamp": datetime.now().isoformat(),
        "profile": profile,
        "metadata": metadata.to_dict(),
        "spectrum": {axis: v.to_dict() for axis, v in views.items()},
        "issues": [i.to_dict() for i in annotated],
        "recommendations": [r.to_dict() for r in recs],
        "resolved_values": resolved,
    }
    with open(filepath, "w") as f:
        json.dump(state, f, indent=2, default=str)
    return filepath


# ─── Main ─────────────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(
        description=f"Betaflight Blackbox Analyzer v{VERSION}",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("logfile", help="Blackbox log (.bbl/.bfl)")
    parser.add_argument("--log-index", type=int, default=1, metavar="N",
                        help="Which log to decode when the file holds several (1-based, default 1).")
    parser.add_argument("--issues", metavar="JSON",
                        help="Detected issues (list, or object with an \"issues\" key).")
    parser.add_argument("--recommendations", metavar="JSON",
                        help="Recommendations to merge and export.")
    parser.add_argument("--settings", metavar="TXT",
                        help="Betaflight CLI `get`/`dump`/`diff all` output with current values.")
    parser.add_argument("--cli-out", metavar="TXT",
                        help="Write the CLI script here (the get script goes next to it).")
    parser.add_argument("--chart", metavar="PNG", help="Write a per-axis spectrum chart.")
    parser.add_argument("--state", metavar="JSON", help="Write analysis state as JSON.")
    parser.add_argument("--axis", choices=AXES, help="Only analyze one axis.")
    parser.add_argument("--profile", metavar="NAME",
                        help="Craft profile label, stored in the state file.")
    parser.add_argument("--no-terminal", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def _progress(pct, msg):
    print(f"\r  Decoding: {pct}%", end="", flush=True)


def run(args):
    R, B, C, G, Y, RED, DIM = _colors()
    show = not args.no_terminal

    with open(args.logfile, "rb") as f:
        buf = f.read()

    if show:
        print(f"\n  ▲ Betaflight Blackbox Analyzer v{VERSION}")
        print(f"  Loading: {args.logfile}")
        n_logs = count_logs(buf)
        if n_logs > 1:
            print(f"  {DIM}{n_logs} logs in file, decoding #{args.log_index}{R}")

    parsed = parse_bbl_buffer(buf, on_progress=_progress if show else None,
                              log_index=args.log_index - 1)
    if show:
        print()
    frames, metadata = parsed.frames, parsed.metadata

    cache = SpectrumCache()
    axes = [args.axis] if args.axis else list(AXES)
    views = {axis: cache.get(frames, axis) for axis in axes}

    if show:
        print_log_summary(metadata, frames)
        energy = {axis: view.band_energy() for axis, view in views.items() if not view.empty}
        print_spectrum_report(views, energy)

    annotated, cross_recs = [], []
    if args.issues:
        issues = load_issues(args.issues)
        if args.axis:
            issues = [i for i in issues if i.axis in (args.axis, "global")]
        annotated, cross_recs = correlate_axes(issues)
        if show:
            print_cross_axis_report(annotated)

    recs = load_recommendations(args.recommendations) if args.recommendations else []
    final = deduplicate_recommendations(recs + cross_recs)

    imported = {}
    if args.settings:
        settings = load_settings_file(args.settings)
        imported = settings.imported_values
        parse = settings.last_parse_result
        if show and parse is not None:
            print(f"\n  {DIM}Imported {parse.parsed_count} settings from {args.settings}{R}")

    cli_text = get_script = None
    resolved = {}
    if final:
        cli_text = generate_cli_commands(final, metadata.pid_profile, metadata.filter_settings, imported)
        get_script = generate_get_script(final, metadata.pid_profile, metadata.filter_settings)
        resolved = collect_resolved_values(final, metadata.pid_profile, metadata.filter_settings, imported)
        if show:
            print_recommendations(final)
            print_cli(cli_text, get_script)
        if args.cli_out:
            with open(args.cli_out, "w") as f:
                f.write(cli_text + "\n")
            if get_script:
                get_path = os.path.splitext(args.cli_out)[0] + "_get.txt"
                with open(get_path, "w") as f:
                    f.write(get_script + "\n")
                logging.info(f"Get script: {get_path}")
            logging.info(f"CLI script: {args.cli_out}")

    if args.chart:
        title = f"Gyro Spectrum — {metadata.craft_name}" if metadata.craft_name else None
        if create_spectrum_chart(views, args.chart, title):
            logging.info(f"Chart: {args.chart}")
        else:
            logging.warning("Not enough samples for a spectrum chart")

    if args.state:
        save_state(args.state, metadata, views, annotated, final, resolved, args.profile)
        logging.info(f"State: {args.state}")

    if show:
        print(f"\n{B}{C}{'═'*70}{R}\n")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="  %(message)s")

    if not os.path.isfile(args.logfile):
        print(f"ERROR: File not found: {args.logfile}")
        return 1
    if args.log_index < 1:
        print("ERROR: --log-index starts at 1")
        return 1

    try:
        return run(args)
    except BlackboxDecodeError as e:
        print(f"\nERROR: {e}")
    except (OSError, json.JSONDecodeError, ModelError) as e:
        print(f"ERROR: {e}")
    except KeyboardInterrupt:
        print("\n  Interrupted.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
