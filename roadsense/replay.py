#!/usr/bin/env python3
"""
RoadSense Drive Replay

Replays a recorded drive (GPS fixes + raw accelerometer stream) through the
vibration processor and the survey session engine, exactly as a live survey
would run, and produces a pavement condition report with visualizations.

Usage:
    roadsense-replay <drive.json> [options]

Options:
    --mode <general|sdi|pci>  Survey mode (default: general)
    --output <dir>            Output directory for reports (default: ./report)
    --db <url>                Persist into a SQLAlchemy database (default: in-memory)
    --config <file>           JSON file overriding the default SurveyConfig
    --no-plots                Skip generating plot images
    -v, --verbose             Debug logging
"""

import argparse
import json
import logging
import math
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np

from .config import SurveyConfig, load_config
from .engine import SurveySessionEngine
from .errors import RoadSenseError, StorageError
from .log import setup_logging
from .models import (
    AccelerationReading,
    Condition,
    LocationFix,
    PciDistressType,
    PciObservation,
    SdiDistressItem,
    SdiDistressType,
    SegmentMetadata,
    Severity,
    SurveyMode,
    format_station,
)
from .pci import PciIndexCalculator, PciRating
from .sdi import SdiIndexCalculator
from .store import MemoryStore, SqlStore
from .vibration import VibrationSignalProcessor

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = (1,)

CONDITION_COLORS = {
    Condition.GOOD: "#44cc44",
    Condition.FAIR: "#cccc44",
    Condition.LIGHTLY_DAMAGED: "#ff8844",
    Condition.SEVERELY_DAMAGED: "#ff4444",
}


# ===== Data Structures =====

@dataclass
class MarkedSegment:
    """A stretch the surveyor marked during the drive, by cumulative distance."""
    start_m: float
    end_m: float
    name: str = ""
    surface: str = ""
    condition: Condition = None
    distress: list = field(default_factory=list)   # raw dicts, parsed per mode


@dataclass
class RecordedDrive:
    source_file: str
    version: int
    sample_rate_hz: int
    road_name: str
    fixes: list          # LocationFix, time ordered
    accel: list          # AccelerationReading, time ordered
    segments: list       # MarkedSegment, by start distance

    @property
    def duration_s(self) -> float:
        times = [f.timestamp_ms for f in self.fixes] + [a.timestamp_ms for a in self.accel]
        if not times:
            return 0.0
        return (max(times) - min(times)) / 1000.0


@dataclass
class ReplayResult:
    session: object                 # SurveySession as finalized by the engine
    segments: list                  # stored segments
    telemetry: list                 # stored telemetry samples
    accepted_fixes: int = 0
    rejected_fixes: int = 0
    failed_segments: int = 0


class DriveClock:
    """Clock for the engine that follows the recorded timestamps, not wall time."""

    def __init__(self, t_ms: int = 0):
        self.t_ms = t_ms

    def __call__(self) -> float:
        return self.t_ms / 1000.0


# ===== Parsing =====

def parse_distress(entries: list, mode: SurveyMode) -> list:
    """Turn raw distress dicts into the observation records the mode's calculator takes."""
    if mode is SurveyMode.GENERAL:
        return []
    items = []
    for entry in entries:
        severity = Severity(entry["severity"])
        quantity = float(entry["quantity"])
        if mode is SurveyMode.SDI:
            items.append(SdiDistressItem(SdiDistressType(entry["type"]), severity, quantity))
        else:
            items.append(PciObservation(PciDistressType(entry["type"]), severity, quantity))
    return items


DISTRESS_KEYS = ("type", "severity", "quantity")


def _check_distress(entries: list, segment_name: str) -> list:
    """Validate the fields every distress entry needs; the type is checked per mode later."""
    for entry in entries:
        missing = [k for k in DISTRESS_KEYS if k not in entry]
        if missing:
            raise ValueError(f"Segment {segment_name!r}: distress entry {entry} "
                             f"missing {', '.join(missing)}")
        Severity(entry["severity"])
        try:
            quantity = float(entry["quantity"])
        except TypeError:
            raise ValueError(f"Segment {segment_name!r}: distress quantity "
                             f"{entry['quantity']!r} is not a number") from None
        if not math.isfinite(quantity):
            raise ValueError(f"Segment {segment_name!r}: non-finite distress quantity {quantity}")
    return list(entries)


def parse_drive(obj: dict, source_file: str = "") -> RecordedDrive:
    version = obj.get("version", 1)
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported drive version {version} (expected {SUPPORTED_VERSIONS})")

    fixes = [
        LocationFix(
            timestamp_ms=int(f["t"]),
            lat=float(f["lat"]),
            lon=float(f["lon"]),
            altitude=float(f.get("alt", 0.0)),
            speed=float(f.get("speed", 0.0)),
            accuracy_m=float(f.get("accuracy", 0.0)),
        )
        for f in obj.get("fixes", [])
    ]
    if not fixes:
        raise ValueError("No GPS fixes in drive file")

    accel = [
        AccelerationReading(int(a["t"]), float(a["x"]), float(a["y"]), float(a["z"]))
        for a in obj.get("accel", [])
    ]

    segments = []
    for s in obj.get("segments", []):
        start_m, end_m = float(s["start_m"]), float(s["end_m"])
        if end_m < start_m:
            raise ValueError(f"Segment {s.get('name', '')!r} ends before it starts")
        segments.append(MarkedSegment(
            start_m=start_m,
            end_m=end_m,
            name=s.get("name", ""),
            surface=s.get("surface", ""),
            condition=Condition(s["condition"]) if s.get("condition") else None,
            distress=_check_distress(s.get("distress", []), s.get("name", "")),
        ))

    fixes.sort(key=lambda f: f.timestamp_ms)
    accel.sort(key=lambda a: a.timestamp_ms)
    segments.sort(key=lambda s: s.start_m)

    print(f"Parsed {len(fixes)} fixes and {len(accel)} accel samples "
          f"({obj.get('sample_rate_hz', 50)} Hz), {len(segments)} marked segments")

    return RecordedDrive(
        source_file=source_file,
        version=version,
        sample_rate_hz=obj.get("sample_rate_hz", 50),
        road_name=obj.get("road_name", ""),
        fixes=fixes,
        accel=accel,
        segments=segments,
    )


def load_drive(filepath: Path) -> RecordedDrive:
    """Load a recorded drive JSON file."""
    if filepath.suffix != ".json":
        raise ValueError(f"Unknown file extension: {filepath.suffix} (expected .json)")
    with open(filepath) as f:
        obj = json.load(f)
    return parse_drive(obj, str(filepath))


# ===== Replay =====

def merge_streams(drive: RecordedDrive) -> list:
    """Interleave both streams by timestamp; at equal times acceleration goes first."""
    events = [(a.timestamp_ms, 0, a) for a in drive.accel]
    events += [(f.timestamp_ms, 1, f) for f in drive.fixes]
    events.sort(key=lambda e: (e[0], e[1]))
    return [e[2] for e in events]


def replay_drive(drive: RecordedDrive, engine: SurveySessionEngine,
                 clock: DriveClock = None) -> ReplayResult:
    """Feed a drive through the engine, opening and closing the marked segments."""
    mode = engine.mode
    # Unknown distress types for this mode fail before a session exists
    marks = [replace(m, distress=parse_distress(m.distress, mode)) for m in drive.segments]
    accepted = rejected = failed = 0
    current = None

    def close_segment(mark: MarkedSegment):
        nonlocal failed
        metadata = SegmentMetadata(name=mark.name, surface_type=mark.surface,
                                   manual_condition=mark.condition)
        result = engine.end_segment(metadata, mark.distress)
        if not result:
            failed += 1
            logger.warning("Segment %r not stored: %s", mark.name, result.reason)

    first_t = drive.fixes[0].timestamp_ms
    if clock is not None:
        clock.t_ms = first_t
    started = engine.start(road_name=drive.road_name, timestamp_ms=first_t)
    if not started:
        raise StorageError(f"Could not start session: {started.reason}")

    for event in merge_streams(drive):
        if clock is not None:
            clock.t_ms = event.timestamp_ms
        if isinstance(event, AccelerationReading):
            engine.process_acceleration(event)
            continue

        if engine.update_location(event):
            accepted += 1
        else:
            rejected += 1

        distance = engine.distance_m
        while True:
            if current is not None and distance >= current.end_m:
                close_segment(current)
                current = None
            elif current is None and marks and distance >= marks[0].start_m:
                current = marks.pop(0)
                engine.start_segment()
            else:
                break

    if current is not None:
        # Drive ran out before the marked end
        close_segment(current)

    ended = engine.end(timestamp_ms=drive.fixes[-1].timestamp_ms)
    if not ended:
        logger.warning("Session did not finalize cleanly: %s", ended.reason)

    store = engine.store
    return ReplayResult(
        session=ended.value,
        segments=store.get_segments_for_session(engine.session_id),
        telemetry=store.get_telemetry(engine.session_id),
        accepted_fixes=accepted,
        rejected_fixes=rejected,
        failed_segments=failed,
    )


# ===== Report Generation =====

def segment_row(segment) -> dict:
    row = {
        "station_start": format_station(segment.start_distance_m),
        "station_end": format_station(segment.end_distance_m),
        "start_m": round(segment.start_distance_m, 1),
        "end_m": round(segment.end_distance_m, 1),
        "length_m": round(segment.length_m, 1),
        "name": segment.name,
        "surface": segment.surface_type,
        "roughness_rms_g": round(segment.roughness_rms, 4),
        "consistency": round(segment.consistency, 3),
        "confidence": segment.confidence,
        "condition": segment.condition.value,
        "condition_auto": segment.condition_auto.value,
        "manual_override": segment.manual_condition is not None,
    }
    if segment.mode is SurveyMode.SDI:
        row.update({
            "sdi": segment.sdi_score,
            "sdi_category": segment.sdi_category,
            "distress": [
                {"type": i.type.value, "severity": i.severity.value, "extent": i.extent}
                for i in segment.items
            ],
        })
    elif segment.mode is SurveyMode.PCI:
        row.update({
            "pci": segment.pci_score,
            "pci_rating": segment.pci_rating,
            "sample_area_m2": round(segment.sample_area_m2, 1),
            "corrected_deduct_value": round(segment.corrected_deduct_value, 2),
            "dominant_distress": (segment.dominant_distress.value
                                  if segment.dominant_distress else None),
            "distress": [
                {
                    "type": i.type.value,
                    "astm_code": i.type.astm_code,
                    "severity": i.severity.value,
                    "quantity": i.quantity,
                    "unit": i.type.unit,
                    "density_pct": round(i.density, 3),
                    "deduct_value": round(i.deduct_value, 2),
                }
                for i in segment.items
            ],
        })
    return row


def generate_report(drive: RecordedDrive, result: ReplayResult, mode: SurveyMode) -> dict:
    """Build the JSON report structure."""
    session = result.session
    segments = result.segments

    distribution = {c.value: 0 for c in Condition}
    for s in segments:
        distribution[s.condition.value] += 1

    roughness = np.array([t.roughness for t in result.telemetry], dtype=np.float64)

    report = {
        "drive_file": drive.source_file,
        "version": drive.version,
        "mode": mode.value,
        "road_name": drive.road_name,
        "sample_rate_hz": drive.sample_rate_hz,
        "duration_sec": round(drive.duration_s, 1),
        "total_fixes": len(drive.fixes),
        "accepted_fixes": result.accepted_fixes,
        "rejected_fixes": result.rejected_fixes,
        "total_accel_samples": len(drive.accel),
        "telemetry_samples": len(result.telemetry),
        "session": {
            "id": session.id,
            "start_time_ms": session.start_time_ms,
            "end_time_ms": session.end_time_ms,
            "distance_m": round(session.total_distance_m, 1),
            "station_end": format_station(session.total_distance_m),
            "avg_confidence": session.avg_confidence,
            "start": [session.start_lat, session.start_lon],
            "end": [session.end_lat, session.end_lon],
        },
        "roughness_g": {
            "mean": round(float(np.mean(roughness)), 4) if len(roughness) else 0.0,
            "max": round(float(np.max(roughness)), 4) if len(roughness) else 0.0,
        },
        "average_confidence": session.avg_confidence,
        "condition_distribution": distribution,
        "segments": [segment_row(s) for s in segments],
        "failed_segments": result.failed_segments,
        "condition_key": {c.value: c.label for c in Condition},
    }

    if mode is SurveyMode.SDI:
        avg = SdiIndexCalculator.average_sdi([s.sdi_score for s in segments])
        report["average_sdi"] = avg
        report["sdi_category"] = SdiIndexCalculator.categorize(avg)
    elif mode is SurveyMode.PCI:
        scores = [s.pci_score for s in segments]
        avg = PciIndexCalculator.average_pci(scores)
        report["average_pci"] = avg
        report["pci_rating"] = PciRating.from_score(avg).label if scores else None

    return report


# ===== Visualization =====

def generate_plots(result: ReplayResult, config: SurveyConfig, output_dir: Path):
    """Generate matplotlib visualizations."""
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        print("Warning: matplotlib not available, skipping plots", file=sys.stderr)
        return

    dist = np.array([t.cumulative_distance_m for t in result.telemetry], dtype=np.float64)
    rough = np.array([t.roughness for t in result.telemetry], dtype=np.float64)

    # --- Roughness profile with condition bands ---
    fig, ax = plt.subplots(figsize=(14, 5))
    ax.set_title("Roughness Profile", fontsize=14, fontweight="bold")

    good, fair, light = config.condition_thresholds
    top = max(float(np.max(rough)) if len(rough) else 0.0, light) * 1.15
    bands = [(0.0, good, Condition.GOOD), (good, fair, Condition.FAIR),
             (fair, light, Condition.LIGHTLY_DAMAGED), (light, top, Condition.SEVERELY_DAMAGED)]
    for low, high, condition in bands:
        ax.axhspan(low, high, color=CONDITION_COLORS[condition], alpha=0.12,
                   label=condition.label)

    ax.plot(dist, rough, linewidth=0.8, color="#4488cc")
    for s in result.segments:
        ax.axvspan(s.start_distance_m, s.end_distance_m, ymin=0.0, ymax=0.04,
                   color=CONDITION_COLORS[s.condition])
        ax.annotate(format_station(s.start_distance_m), xy=(s.start_distance_m, top * 0.95),
                    fontsize=7, color="#444")

    ax.set_ylim(0, top)
    ax.set_xlabel("Distance [m]")
    ax.set_ylabel("Roughness [g RMS]")
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=8, loc="upper left")

    plt.tight_layout()
    fig.savefig(output_dir / "roughness_profile.png", dpi=150)
    plt.close(fig)
    print("  Saved roughness_profile.png")

    # --- Per-segment confidence ---
    if result.segments:
        fig, ax = plt.subplots(figsize=(10, 4))
        labels = [format_station(s.start_distance_m) for s in result.segments]
        ax.bar(labels, [s.confidence for s in result.segments],
               color=[CONDITION_COLORS[s.condition] for s in result.segments])
        ax.axhline(70, color="#444", linewidth=0.5, linestyle="--")
        ax.axhline(45, color="#444", linewidth=0.5, linestyle=":")
        ax.set_ylim(0, 100)
        ax.set_ylabel("Confidence")
        ax.set_title("Segment Confidence")
        ax.grid(True, alpha=0.3, axis="y")

        plt.tight_layout()
        fig.savefig(output_dir / "confidence.png", dpi=150)
        plt.close(fig)
        print("  Saved confidence.png")

    # --- Condition histogram ---
    fig, ax = plt.subplots(figsize=(6, 4))
    counts = [sum(1 for s in result.segments if s.condition is c) for c in Condition]
    ax.bar([c.label for c in Condition], counts, color=[CONDITION_COLORS[c] for c in Condition])
    ax.set_ylabel("Number of Segments")
    ax.set_title("Condition Distribution")
    ax.grid(True, alpha=0.3, axis="y")

    plt.tight_layout()
    fig.savefig(output_dir / "condition_histogram.png", dpi=150)
    plt.close(fig)
    print("  Saved condition_histogram.png")


# ===== Main =====

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="RoadSense Drive Replay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Replays a recorded drive through the survey engine and produces\n"
               "a pavement condition report with visualizations.",
    )
    parser.add_argument("drive_file", help="Path to recorded drive (.json)")
    parser.add_argument("--mode", choices=[m.value for m in SurveyMode], default="general",
                        help="Survey mode (default: general)")
    parser.add_argument("--output", type=str, default="./report",
                        help="Output directory for reports (default: ./report)")
    parser.add_argument("--db", type=str, default=None,
                        help="SQLAlchemy database URL to persist into (default: in-memory)")
    parser.add_argument("--config", type=str, default=None,
                        help="JSON config file overriding the defaults")
    parser.add_argument("--no-plots", action="store_true",
                        help="Skip generating plot images")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")

    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)

    filepath = Path(args.drive_file)
    if not filepath.exists():
        print(f"Error: file not found: {filepath}", file=sys.stderr)
        return 1

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    mode = SurveyMode(args.mode)

    try:
        config = load_config(Path(args.config)) if args.config else SurveyConfig()
        print(f"Loading {filepath}...")
        drive = load_drive(filepath)
        store = SqlStore(args.db) if args.db else MemoryStore()
    except (RoadSenseError, ValueError, KeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Replaying in {mode.value} mode...")
    clock = DriveClock()
    processor = VibrationSignalProcessor.from_config(config)
    with SurveySessionEngine(store, processor=processor, config=config, mode=mode,
                             clock=clock) as engine:
        try:
            result = replay_drive(drive, engine, clock)
        except (RoadSenseError, ValueError) as e:
            # Includes distress types missing from the chosen mode's catalog
            print(f"Error: {e}", file=sys.stderr)
            return 1
    print(f"  {result.accepted_fixes} fixes accepted, {result.rejected_fixes} rejected")
    print(f"  {len(result.segments)} segments stored, {len(result.telemetry)} telemetry samples")

    print("Generating report...")
    report = generate_report(drive, result, mode)
    report_path = output_dir / "report.json"
    with open(report_path, "w") as f:
        json.dump(report, f, indent=2)
    print("  Saved report.json")

    if not args.no_plots:
        print("Generating plots...")
        generate_plots(result, config, output_dir)

    # Print summary to console
    print()
    print(f"{'='*60}")
    print("PAVEMENT CONDITION REPORT")
    print(f"{'='*60}")
    print(f"File:       {filepath.name}")
    print(f"Mode:       {mode.value}")
    print(f"Duration:   {report['duration_sec']}s ({report['total_fixes']} fixes)")
    print(f"Distance:   {report['session']['distance_m']:.0f} m "
          f"(STA {report['session']['station_end']})")
    print(f"Confidence: {report['average_confidence']}")
    if "average_sdi" in report:
        print(f"SDI:        {report['average_sdi']} ({report['sdi_category']})")
    if "average_pci" in report:
        print(f"PCI:        {report['average_pci']} ({report['pci_rating']})")
    print()

    for condition in Condition:
        count = report["condition_distribution"][condition.value]
        if count > 0:
            bar = "#" * count
            print(f"  {condition.label:>16}: {bar} ({count})")

    if result.segments:
        print()
        print("Segments:")
        for row in report["segments"]:
            line = (f"  {row['station_start']:>7} - {row['station_end']:<7} "
                    f"rms={row['roughness_rms_g']:.3f}g "
                    f"conf={row['confidence']:3d} {row['condition']}")
            if row["manual_override"]:
                line += " (manual)"
            if "sdi" in row:
                line += f"  SDI {row['sdi']}"
            if "pci" in row:
                line += f"  PCI {row['pci']} {row['pci_rating']}"
            print(line)

    print()
    print(f"Report: {report_path}")
    print(f"Output: {output_dir}/")
    return 0


if __name__ == "__main__":
    sys.exit(main())
