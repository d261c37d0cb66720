#!/usr/bin/env python3
"""
Generate a synthetic recorded drive for testing roadsense-replay.

Simulates a car driving due north on a straight road at constant speed, with
a phone logging GPS fixes at 1 Hz and the accelerometer at 50 Hz. The road
has known features so the replay report can be checked against them:

  0-150m     Smooth asphalt (low vibration)
  150-250m   Pothole cluster, sharp vertical impacts every ~12m
  250-400m   Rough stretch (elevated broadband vibration)
  400-500m   Smooth again, with GPS jitter and some low-accuracy fixes

Marked survey segments every 100m carry distress lists whose types exist in
both the SDI and the PCI catalog, so the same drive replays in every mode.
"""

import argparse
import json
from pathlib import Path

import numpy as np

from .geo import offset_position
from .vibration import STANDARD_GRAVITY

SAMPLE_RATE_HZ = 50
GPS_RATE_HZ = 1
SPEED_MPS = 10.0            # 36 km/h, inside the confidence speed band
TOTAL_DISTANCE_M = 500.0
START_LAT, START_LON = -6.2000, 106.8166
START_ALT_M = 12.0
START_TIME_MS = 1767225600000   # 2026-01-01T00:00:00Z

TOTAL_TIME_S = TOTAL_DISTANCE_M / SPEED_MPS
N_ACCEL = int(TOTAL_TIME_S * SAMPLE_RATE_HZ) + 1
N_FIXES = int(TOTAL_TIME_S * GPS_RATE_HZ) + 1

SMOOTH_NOISE_MPS2 = 0.4
ROUGH_NOISE_MPS2 = 6.0
POTHOLE_SPACING_M = 12.0
POTHOLE_IMPACT_MPS2 = 25.0

MARKED_SEGMENTS = [
    {"start_m": 0.0, "end_m": 100.0, "name": "STA 0+000", "surface": "asphalt",
     "distress": []},
    {"start_m": 100.0, "end_m": 200.0, "name": "STA 0+100", "surface": "asphalt",
     "distress": [
         {"type": "pothole", "severity": "high", "quantity": 4},
         {"type": "raveling", "severity": "medium", "quantity": 12.0},
     ]},
    {"start_m": 200.0, "end_m": 300.0, "name": "STA 0+200", "surface": "asphalt",
     "distress": [
         {"type": "rutting", "severity": "medium", "quantity": 30.0},
         {"type": "depression", "severity": "low", "quantity": 8.0},
     ]},
    {"start_m": 300.0, "end_m": 400.0, "name": "STA 0+300", "surface": "asphalt",
     "condition": "severely_damaged",
     "distress": [
         {"type": "rutting", "severity": "high", "quantity": 45.0},
         {"type": "raveling", "severity": "high", "quantity": 25.0},
     ]},
    {"start_m": 400.0, "end_m": 490.0, "name": "STA 0+400", "surface": "asphalt",
     "distress": []},
]


def distance_to_time_ms(distance_m):
    return distance_m / SPEED_MPS * 1000.0


def distance_to_sample_idx(distance_m):
    return int(distance_to_time_ms(distance_m) * SAMPLE_RATE_HZ / 1000)


def generate_accel(rng: np.random.Generator):
    """Raw device-frame acceleration (m/s², gravity on Z) with the road features."""
    timestamps = START_TIME_MS + np.arange(N_ACCEL) * (1000 // SAMPLE_RATE_HZ)

    accel_x = rng.normal(0, SMOOTH_NOISE_MPS2 * 0.5, N_ACCEL)
    accel_y = rng.normal(0, SMOOTH_NOISE_MPS2 * 0.5, N_ACCEL)
    accel_z = STANDARD_GRAVITY + rng.normal(0, SMOOTH_NOISE_MPS2, N_ACCEL)

    # Pothole cluster: down-then-up impact pairs
    for d in np.arange(160.0, 250.0, POTHOLE_SPACING_M):
        idx = distance_to_sample_idx(d)
        accel_z[idx:idx + 3] -= POTHOLE_IMPACT_MPS2 * np.array([0.6, 1.0, 0.4])
        accel_z[idx + 3:idx + 6] += POTHOLE_IMPACT_MPS2 * np.array([0.5, 0.8, 0.3])
        accel_y[idx:idx + 3] += rng.normal(0, 2.0, 3)

    # Rough stretch
    s1, s2 = distance_to_sample_idx(250.0), distance_to_sample_idx(400.0)
    accel_z[s1:s2] += rng.normal(0, ROUGH_NOISE_MPS2, s2 - s1)
    accel_x[s1:s2] += rng.normal(0, ROUGH_NOISE_MPS2 * 0.3, s2 - s1)

    return timestamps, accel_x, accel_y, accel_z


def generate_fixes(rng: np.random.Generator) -> list:
    fixes = []
    for i in range(N_FIXES):
        t_ms = START_TIME_MS + int(i * 1000 / GPS_RATE_HZ)
        distance = min(i / GPS_RATE_HZ * SPEED_MPS, TOTAL_DISTANCE_M)
        north, east = distance, 0.0
        accuracy = float(rng.uniform(3.0, 8.0))

        if distance >= 400.0:
            # Urban canyon: scattered positions, every fourth fix unusable
            north += rng.normal(0, 1.5)
            east += rng.normal(0, 1.5)
            accuracy = 40.0 if i % 4 == 0 else float(rng.uniform(10.0, 18.0))

        lat, lon = offset_position(START_LAT, START_LON, north, east)
        fixes.append({
            "t": t_ms,
            "lat": round(lat, 8),
            "lon": round(lon, 8),
            "alt": round(START_ALT_M + 0.01 * distance, 2),
            "speed": round(SPEED_MPS + float(rng.normal(0, 0.3)), 2),
            "accuracy": round(accuracy, 1),
        })
    return fixes


def generate_drive(seed: int = 42) -> dict:
    """Build a complete recorded drive as a JSON-ready dict."""
    rng = np.random.default_rng(seed)

    timestamps, ax, ay, az = generate_accel(rng)
    accel = [
        {"t": int(timestamps[i]),
         "x": round(float(ax[i]), 5),
         "y": round(float(ay[i]), 5),
         "z": round(float(az[i]), 5)}
        for i in range(len(timestamps))
    ]

    return {
        "version": 1,
        "road_name": "Synthetic Test Road",
        "sample_rate_hz": SAMPLE_RATE_HZ,
        "fixes": generate_fixes(rng),
        "accel": accel,
        "segments": [dict(s, distress=[dict(d) for d in s["distress"]]) for s in MARKED_SEGMENTS],
    }


def write_drive(filepath: Path, drive: dict):
    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w") as f:
        json.dump(drive, f)
    print(f"Wrote {filepath} ({len(drive['fixes'])} fixes, {len(drive['accel'])} accel samples, "
          f"{filepath.stat().st_size} bytes)")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate a synthetic recorded drive")
    parser.add_argument("--output", type=str, default="./test_data/synthetic_drive.json",
                        help="Output file (default: ./test_data/synthetic_drive.json)")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed (default: 42)")
    args = parser.parse_args(argv)

    print("Generating synthetic drive...")
    print(f"  Speed: {SPEED_MPS:.1f} m/s ({SPEED_MPS * 3.6:.0f} km/h)")
    print(f"  Distance: {TOTAL_DISTANCE_M:.0f} m")
    print(f"  Duration: {TOTAL_TIME_S:.1f}s = {N_ACCEL} accel samples, {N_FIXES} fixes")
    print()

    drive = generate_drive(args.seed)
    write_drive(Path(args.output), drive)

    print()
    print("Drive features:")
    print("  0-150m    Smooth asphalt")
    print("  150-250m  Pothole cluster")
    print("  250-400m  Rough stretch")
    print("  400-500m  Smooth, GPS jitter and low-accuracy fixes")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
