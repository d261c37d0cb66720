"""
End-to-end tests: synthetic drive generation, replay through the engine and
the JSON report written by the command line tool.
"""

import json

import pytest

from roadsense import replay, synthetic
from roadsense.engine import SurveySessionEngine
from roadsense.models import (
    Condition,
    PciObservation,
    SdiDistressItem,
    SurveyMode,
)
from roadsense.replay import (
    DriveClock,
    generate_report,
    load_drive,
    merge_streams,
    parse_distress,
    parse_drive,
    replay_drive,
)
from roadsense.store import MemoryStore, SqlStore

pytestmark = pytest.mark.integration


@pytest.fixture
def drive_file(tmp_path, synthetic_drive):
    path = tmp_path / "drive.json"
    synthetic.write_drive(path, synthetic_drive)
    return path


def run_replay(drive_file, tmp_path, *extra):
    out = tmp_path / "out"
    code = replay.main([str(drive_file), "--output", str(out), "--no-plots", *extra])
    report = json.loads((out / "report.json").read_text()) if code == 0 else None
    return code, report


class TestSyntheticDrive:

    def test_deterministic(self):
        assert synthetic.generate_drive(seed=7) == synthetic.generate_drive(seed=7)
        assert synthetic.generate_drive(seed=7) != synthetic.generate_drive(seed=8)

    def test_drives_are_independent(self):
        first = synthetic.generate_drive(seed=7)
        first["segments"][1]["distress"].clear()
        assert synthetic.generate_drive(seed=7)["segments"][1]["distress"]

    def test_shape(self, synthetic_drive):
        assert len(synthetic_drive["fixes"]) == synthetic.N_FIXES == 51
        assert len(synthetic_drive["accel"]) == synthetic.N_ACCEL == 2501
        assert len(synthetic_drive["segments"]) == 5
        assert sum(1 for f in synthetic_drive["fixes"] if f["accuracy"] > 25) == 3

    def test_main_writes_file(self, tmp_path):
        path = tmp_path / "nested" / "drive.json"
        assert synthetic.main(["--output", str(path), "--seed", "3"]) == 0
        assert json.loads(path.read_text())["road_name"] == "Synthetic Test Road"


class TestParsing:

    def test_load_drive(self, drive_file):
        drive = load_drive(drive_file)
        assert drive.road_name == "Synthetic Test Road"
        assert drive.sample_rate_hz == 50
        assert drive.duration_s == pytest.approx(50.0)
        assert drive.segments[3].condition is Condition.SEVERELY_DAMAGED

    def test_wrong_extension(self, tmp_path):
        with pytest.raises(ValueError):
            load_drive(tmp_path / "drive.csv")

    def test_rejects_bad_input(self):
        with pytest.raises(ValueError):
            parse_drive({"version": 2, "fixes": [{"t": 0, "lat": 0, "lon": 0}]})
        with pytest.raises(ValueError):
            parse_drive({"fixes": []})
        with pytest.raises(ValueError):
            parse_drive({"fixes": [{"t": 0, "lat": 0, "lon": 0}],
                         "segments": [{"start_m": 50, "end_m": 10}]})

    def test_parse_distress_per_mode(self):
        entries = [{"type": "rutting", "severity": "medium", "quantity": 30.0}]
        assert parse_distress(entries, SurveyMode.GENERAL) == []
        (sdi_item,) = parse_distress(entries, SurveyMode.SDI)
        (pci_item,) = parse_distress(entries, SurveyMode.PCI)
        assert isinstance(sdi_item, SdiDistressItem)
        assert isinstance(pci_item, PciObservation)
        assert sdi_item.extent == pci_item.quantity == 30.0

    @pytest.mark.parametrize("entry", [
        {"type": "pothole", "quantity": 2},
        {"severity": "high", "quantity": 2},
        {"type": "pothole", "severity": "high"},
        {"type": "pothole", "severity": "extreme", "quantity": 2},
        {"type": "pothole", "severity": "high", "quantity": None},
        {"type": "pothole", "severity": "high", "quantity": "nan"},
    ])
    def test_rejects_incomplete_distress(self, entry):
        with pytest.raises(ValueError):
            parse_drive({"fixes": [{"t": 0, "lat": 0, "lon": 0}],
                         "segments": [{"start_m": 0, "end_m": 10, "distress": [entry]}]})

    def test_parse_distress_unknown_type(self):
        with pytest.raises(ValueError):
            parse_distress([{"type": "alligator_crack", "severity": "high", "quantity": 1}],
                           SurveyMode.SDI)

    def test_merge_streams_accel_first(self):
        drive = parse_drive({
            "fixes": [{"t": 1000, "lat": 0, "lon": 0}],
            "accel": [{"t": 1000, "x": 0, "y": 0, "z": 9.8},
                      {"t": 980, "x": 0, "y": 0, "z": 9.8}],
        })
        events = merge_streams(drive)
        assert [e.timestamp_ms for e in events] == [980, 1000, 1000]
        assert events[-1] is drive.fixes[0]


class TestReplay:

    def test_replay_drive(self, synthetic_drive):
        drive = parse_drive(synthetic_drive, "synthetic")
        store = MemoryStore()
        clock = DriveClock()
        with SurveySessionEngine(store, mode=SurveyMode.SDI, clock=clock) as engine:
            result = replay_drive(drive, engine, clock)

        assert result.accepted_fixes == 48
        assert result.rejected_fixes == 3
        assert result.failed_segments == 0
        assert len(result.telemetry) == 48
        assert result.session.finished
        assert result.session.total_distance_m > 480

        segments = result.segments
        assert len(segments) == 5
        assert [s.sdi_score for s in segments] == [0, 6, 13, 34, 0]
        assert segments[3].condition is Condition.SEVERELY_DAMAGED
        assert segments[3].manual_condition is Condition.SEVERELY_DAMAGED
        assert segments[3].roughness_rms > segments[0].roughness_rms
        for a, b in zip(segments, segments[1:]):
            assert a.end_distance_m <= b.start_distance_m

        stamps = [t.timestamp_ms for t in result.telemetry]
        assert stamps == sorted(stamps)

    def test_report_structure(self, synthetic_drive):
        drive = parse_drive(synthetic_drive)
        store = MemoryStore()
        with SurveySessionEngine(store) as engine:
            result = replay_drive(drive, engine)
        report = generate_report(drive, result, SurveyMode.GENERAL)

        assert report["mode"] == "general"
        assert report["total_fixes"] == 51
        assert sum(report["condition_distribution"].values()) == 5
        assert report["segments"][0]["station_start"] == "0+000"
        assert report["segments"][3]["manual_override"]
        assert "average_sdi" not in report and "average_pci" not in report


class TestCommandLine:

    def test_general_mode(self, drive_file, tmp_path, capsys):
        code, report = run_replay(drive_file, tmp_path)
        assert code == 0
        assert report["accepted_fixes"] == 48
        assert report["rejected_fixes"] == 3
        assert report["telemetry_samples"] == 48
        assert len(report["segments"]) == 5
        assert 0 <= report["average_confidence"] <= 100
        assert report["condition_key"]["lightly_damaged"] == "Lightly Damaged"
        assert "PAVEMENT CONDITION REPORT" in capsys.readouterr().out

    def test_sdi_mode(self, drive_file, tmp_path):
        code, report = run_replay(drive_file, tmp_path, "--mode", "sdi")
        assert code == 0
        assert [row["sdi"] for row in report["segments"]] == [0, 6, 13, 34, 0]
        assert report["average_sdi"] == 10
        assert report["sdi_category"] == "Very Good"

    def test_pci_mode(self, drive_file, tmp_path):
        code, report = run_replay(drive_file, tmp_path, "--mode", "pci")
        assert code == 0
        rows = report["segments"]
        assert rows[0]["pci"] == 100
        assert rows[0]["dominant_distress"] is None
        assert all(0 <= row["pci"] <= 100 for row in rows)
        assert rows[3]["pci"] < rows[0]["pci"]
        assert rows[1]["distress"][0]["astm_code"] == 13
        assert rows[1]["sample_area_m2"] == 185.0
        assert 0 <= report["average_pci"] <= 100
        assert report["pci_rating"]

    def test_sql_database(self, drive_file, tmp_path):
        url = f"sqlite:///{tmp_path / 'survey.db'}"
        code, report = run_replay(drive_file, tmp_path, "--db", url, "--mode", "pci")
        assert code == 0

        store = SqlStore(url)
        session = store.get_session(report["session"]["id"])
        assert session.finished
        assert session.mode is SurveyMode.PCI
        assert len(store.get_segments_for_session(session.id)) == 5
        assert len(store.get_telemetry(session.id)) == 48
        store.close()

    def test_config_file(self, drive_file, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"max_accuracy_m": 50.0}))
        code, report = run_replay(drive_file, tmp_path, "--config", str(config))
        assert code == 0
        assert report["rejected_fixes"] == 0

    def test_bad_config(self, drive_file, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"unknown_option": 1}))
        code, _ = run_replay(drive_file, tmp_path, "--config", str(config))
        assert code == 1

    def test_incomplete_distress_entry(self, synthetic_drive, tmp_path):
        synthetic_drive["segments"][1]["distress"].append({"type": "pothole", "quantity": 2})
        path = tmp_path / "drive.json"
        synthetic.write_drive(path, synthetic_drive)
        code, _ = run_replay(path, tmp_path, "--mode", "pci")
        assert code == 1

    def test_distress_outside_mode_catalog(self, synthetic_drive, tmp_path):
        """A PCI-only distress type in an SDI replay fails before any session is stored."""
        synthetic_drive["segments"][1]["distress"].append(
            {"type": "alligator_crack", "severity": "high", "quantity": 5.0})
        path = tmp_path / "drive.json"
        synthetic.write_drive(path, synthetic_drive)
        url = f"sqlite:///{tmp_path / 'survey.db'}"

        code, _ = run_replay(path, tmp_path, "--mode", "sdi", "--db", url)
        assert code == 1
        store = SqlStore(url)
        assert store.get_session(1) is None
        store.close()

    def test_missing_file(self, tmp_path):
        code, _ = run_replay(tmp_path / "nope.json", tmp_path)
        assert code == 1

    def test_plots(self, drive_file, tmp_path):
        pytest.importorskip("matplotlib")
        out = tmp_path / "plots"
        assert replay.main([str(drive_file), "--output", str(out)]) == 0
        assert (out / "roughness_profile.png").exists()
        assert (out / "confidence.png").exists()
        assert (out / "condition_histogram.png").exists()
