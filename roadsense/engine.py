"""
Survey session state machine.

    NOT_STARTED -> ACTIVE <-> PAUSED -> ENDED
                   ACTIVE | PAUSED   -> DISCARDED

Nested per segment: IDLE -> ACTIVE -> IDLE (committed or cancelled).

Location fixes (about 1 Hz) and accelerometer readings (about 50 Hz) arrive on
different threads. Distance accumulates from fix to fix; every accepted fix
becomes a TelemetrySample in a buffer that is flushed to the store in batches
by a single background worker, so update_location never waits on storage.
While a segment is open the current roughness is also collected per fix and
reduced to RMS, consistency, confidence and condition when it closes.

Every operation returns a Transition. Calls that are illegal in the current
state are NOOPs, never exceptions.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum

from .confidence import ConfidenceScorer
from .config import SurveyConfig
from .errors import StorageError
from .geo import haversine_m
from .models import (
    LocationFix,
    PciSegment,
    RoadSegment,
    SdiDistressItem,
    SdiSegment,
    SegmentMetadata,
    SegmentState,
    SessionState,
    SurveyMode,
    SurveySession,
    TelemetrySample,
)
from .pci import PciIndexCalculator
from .sdi import SdiIndexCalculator
from .vibration import RoughnessAnalyzer, VibrationSignalProcessor

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _distress_amount(item) -> float:
    """Extent of an SDI item, quantity of a PCI observation."""
    return item.extent if isinstance(item, SdiDistressItem) else item.quantity


# ===== Results =====

class Outcome(Enum):
    APPLIED = "applied"
    NOOP = "noop"        # not valid in the current state
    FAILED = "failed"    # storage error, state still advanced where possible


@dataclass(frozen=True)
class Transition:
    outcome: Outcome
    value: object = None
    reason: str = ""

    def __bool__(self):
        return self.outcome is Outcome.APPLIED

    @classmethod
    def applied(cls, value=None) -> "Transition":
        return cls(Outcome.APPLIED, value)

    @classmethod
    def noop(cls, reason: str) -> "Transition":
        return cls(Outcome.NOOP, None, reason)

    @classmethod
    def failed(cls, reason: str, value=None) -> "Transition":
        return cls(Outcome.FAILED, value, reason)


@dataclass(frozen=True)
class EngineSnapshot:
    session_state: SessionState
    segment_state: SegmentState
    session_id: int
    distance_m: float
    roughness: float
    confidence: int
    segment_start_m: float
    buffered_samples: int
    pending_segments: int

    @property
    def segment_active(self) -> bool:
        return self.segment_state is SegmentState.ACTIVE


# ===== Engine =====

class SurveySessionEngine:
    """One survey session from start to end or discard. Not reusable."""

    def __init__(self, store, processor: VibrationSignalProcessor = None,
                 config: SurveyConfig = None, mode: SurveyMode = SurveyMode.GENERAL,
                 scorer: ConfidenceScorer = None, analyzer: RoughnessAnalyzer = None,
                 sdi: SdiIndexCalculator = None, pci: PciIndexCalculator = None,
                 clock=time.monotonic):
        self.store = store
        self.config = config or SurveyConfig()
        self.mode = SurveyMode(mode)
        self.processor = processor or VibrationSignalProcessor.from_config(self.config)
        self.scorer = scorer or ConfidenceScorer()
        self.analyzer = analyzer or RoughnessAnalyzer(self.config.condition_thresholds)
        self.sdi = sdi or SdiIndexCalculator(segment_length_m=self.config.sdi_segment_length_m)
        self.pci = pci or PciIndexCalculator(sample_area_m2=self.config.pci_sample_area_m2)
        self._clock = clock

        # Lock order: _lock before _telemetry_lock / _segment_lock / _pending_lock
        self._lock = threading.RLock()
        self._telemetry_lock = threading.Lock()
        self._segment_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="roadsense-flush")
        self._listeners = []

        self._session_state = SessionState.NOT_STARTED
        self._segment_state = SegmentState.IDLE
        self._session = None
        self._session_id = None
        self._finalized = False

        self._distance = 0.0
        self._anchor = None       # last fix distance was measured from
        self._last_fix = None     # latest accepted fix
        self._has_start_fix = False

        self._telemetry = []
        self._flush_scheduled = False
        self._last_flush = self._clock()

        self._segment_samples = []
        self._segment_start_m = 0.0
        self._segment_start_fix = None

        self._pending_segments = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _reject(self, operation: str, reason: str) -> Transition:
        logger.debug("%s ignored: %s", operation, reason)
        return Transition.noop(reason)

    # --- session lifecycle ---

    def start(self, road_name: str = "", surveyor_name: str = "", device_model: str = "",
              timestamp_ms: int = None) -> Transition:
        with self._lock:
            if self._session_state is not SessionState.NOT_STARTED:
                return self._reject("start", f"session is {self._session_state.value}")

            session = SurveySession(
                start_time_ms=_now_ms() if timestamp_ms is None else timestamp_ms,
                mode=self.mode,
                road_name=road_name,
                surveyor_name=surveyor_name,
                device_model=device_model,
            )
            try:
                session.id = self.store.create_session(session)
            except StorageError as e:
                logger.warning("Could not create session: %s", e)
                return Transition.failed(f"create_session failed: {e}")

            self._session = session
            self._session_id = session.id
            self._distance = 0.0
            self._anchor = None
            self._last_fix = None
            with self._telemetry_lock:
                self._telemetry = []
                self._last_flush = self._clock()
            self._reset_segment()
            self._session_state = SessionState.ACTIVE

        logger.info("Session %d started (%s mode, road %r)", session.id, self.mode.value, road_name)
        return Transition.applied(session.id)

    def pause(self) -> Transition:
        with self._lock:
            if self._session_state is not SessionState.ACTIVE:
                return self._reject("pause", f"session is {self._session_state.value}")
            self._session_state = SessionState.PAUSED
        logger.info("Session %d paused at %.1f m", self._session_id, self._distance)
        return Transition.applied()

    def resume(self) -> Transition:
        with self._lock:
            if self._session_state is not SessionState.PAUSED:
                return self._reject("resume", f"session is {self._session_state.value}")
            # Distance driven while paused is not counted
            self._anchor = None
            self._session_state = SessionState.ACTIVE
        logger.info("Session %d resumed", self._session_id)
        return Transition.applied()

    def end(self, timestamp_ms: int = None) -> Transition:
        """Finish the session: final flush, average confidence, session record update.

        An open segment is cancelled. Blocks until the store has seen everything.
        """
        with self._lock:
            if self._session_state not in (SessionState.ACTIVE, SessionState.PAUSED):
                return self._reject("end", f"session is {self._session_state.value}")
            if self._segment_state is SegmentState.ACTIVE:
                logger.info("Cancelling open segment at session end")
                self._reset_segment()
            self._session_state = SessionState.ENDED
            if timestamp_ms is None:
                timestamp_ms = self._last_fix.timestamp_ms if self._last_fix else _now_ms()
            self._session.end_time_ms = timestamp_ms
            self._session.total_distance_m = self._distance

        ok = self._executor.submit(self._finalize).result()
        session = replace(self._session)
        if not ok:
            return Transition.failed("session ended with unsaved data, call flush() to retry",
                                     session)
        logger.info("Session %d ended: %.1f m, avg confidence %d",
                    session.id, session.total_distance_m, session.avg_confidence)
        return Transition.applied(session)

    def discard(self) -> Transition:
        """Drop the session and everything already stored for it."""
        with self._lock:
            if self._session_state not in (SessionState.ACTIVE, SessionState.PAUSED):
                return self._reject("discard", f"session is {self._session_state.value}")
            self._session_state = SessionState.DISCARDED
            self._reset_segment()
            with self._telemetry_lock:
                self._telemetry = []
            with self._pending_lock:
                self._pending_segments = []

        # Runs after any flush already queued
        ok = self._executor.submit(self._delete_session).result()
        logger.info("Session %d discarded", self._session_id)
        if not ok:
            return Transition.failed(f"session {self._session_id} could not be deleted")
        return Transition.applied(self._session_id)

    def close(self):
        self._executor.shutdown(wait=True)

    # --- sensor input ---

    def process_acceleration(self, reading) -> float:
        """Feed one accelerometer reading to the processor; returns current roughness."""
        return self.processor.process_reading(reading)

    def update_location(self, fix: LocationFix) -> Transition:
        """Accept a location fix. Value is the distance added in meters."""
        with self._lock:
            if self._session_state is not SessionState.ACTIVE:
                return self._reject("update_location", f"session is {self._session_state.value}")
            if not all(math.isfinite(v) for v in (fix.lat, fix.lon, fix.accuracy_m)):
                return self._reject("update_location", "non-finite position or accuracy")
            if fix.accuracy_m > self.config.max_accuracy_m:
                return self._reject("update_location",
                                    f"accuracy {fix.accuracy_m:.1f} m worse than "
                                    f"{self.config.max_accuracy_m:.0f} m")

            moved = 0.0
            if self._anchor is None:
                self._anchor = fix
            else:
                step = haversine_m(self._anchor.lat, self._anchor.lon, fix.lat, fix.lon)
                # Below the jitter distance the anchor stays put, so slow creep still adds up
                if step >= self.config.jitter_distance_m:
                    moved = step
                    self._anchor = fix
            self._distance += moved
            self._last_fix = fix

            session = self._session
            if not self._has_start_fix:
                session.start_lat, session.start_lon = fix.lat, fix.lon
                self._has_start_fix = True
            session.end_lat, session.end_lon = fix.lat, fix.lon
            session.total_distance_m = self._distance

            roughness = self.processor.roughness
            ax, ay, az = self.processor.linear_acceleration
            sample = TelemetrySample(
                session_id=self._session_id,
                timestamp_ms=fix.timestamp_ms,
                lat=fix.lat,
                lon=fix.lon,
                altitude=fix.altitude,
                speed=fix.speed,
                accel_x=ax,
                accel_y=ay,
                accel_z=az,
                roughness=roughness,
                gps_accuracy_m=fix.accuracy_m,
                cumulative_distance_m=self._distance,
            )
            with self._telemetry_lock:
                self._telemetry.append(sample)
                elapsed_ms = (self._clock() - self._last_flush) * 1000.0
                due = (len(self._telemetry) >= self.config.flush_batch_size
                       or elapsed_ms >= self.config.flush_interval_ms)

            if self._segment_state is SegmentState.ACTIVE:
                with self._segment_lock:
                    self._segment_samples.append(roughness)

        if due:
            self._schedule_flush()
        if self._listeners:
            snap = self.snapshot()
            for listener in list(self._listeners):
                listener(snap)
        return Transition.applied(moved)

    # --- segments ---

    def start_segment(self) -> Transition:
        with self._lock:
            if self._session_state is not SessionState.ACTIVE:
                return self._reject("start_segment", f"session is {self._session_state.value}")
            if self._segment_state is SegmentState.ACTIVE:
                return self._reject("start_segment", "segment already open")
            with self._segment_lock:
                self._segment_samples = []
            self._segment_start_m = self._distance
            self._segment_start_fix = self._last_fix
            self._segment_state = SegmentState.ACTIVE
        logger.info("Segment started at %.1f m", self._segment_start_m)
        return Transition.applied(self._segment_start_m)

    def cancel_segment(self) -> Transition:
        with self._lock:
            if self._segment_state is not SegmentState.ACTIVE:
                return self._reject("cancel_segment", "no open segment")
            self._reset_segment()
        logger.info("Segment cancelled")
        return Transition.applied()

    def end_segment(self, metadata: SegmentMetadata = None, distress: list = ()) -> Transition:
        """Close the open segment and persist it.

        `distress` holds SdiDistressItem records in SDI mode and PciObservation
        records in PCI mode; it is ignored in GENERAL mode. Value is the stored
        segment. A segment the store rejects is kept and retried on the next
        flush; the transition then reports FAILED with the unsaved segment.
        """
        with self._lock:
            if self._segment_state is not SegmentState.ACTIVE:
                return self._reject("end_segment", "no open segment")
            distress = list(distress)
            if self.mode is not SurveyMode.GENERAL and not all(
                    math.isfinite(_distress_amount(d)) for d in distress):
                return self._reject("end_segment", "non-finite distress quantity")
            with self._segment_lock:
                samples = self._segment_samples
                self._segment_samples = []
            segment = self._build_segment(samples, metadata or SegmentMetadata(), distress)
            self._reset_segment()

        stored = self._executor.submit(self._persist_segment, segment).result()
        if stored is None:
            return Transition.failed("segment queued for retry", segment)
        logger.info("Segment %d stored: %.1f-%.1f m, %s, confidence %d",
                    stored.id, stored.start_distance_m, stored.end_distance_m,
                    stored.condition.value, stored.confidence)
        return Transition.applied(stored)

    def _reset_segment(self):
        with self._segment_lock:
            self._segment_samples = []
        self._segment_state = SegmentState.IDLE
        self._segment_start_m = 0.0
        self._segment_start_fix = None

    def _score_confidence(self, samples: list):
        fix = self._last_fix
        return self.scorer.score(
            gps_available=fix is not None,
            gps_accuracy_m=fix.accuracy_m if fix else 0.0,
            consistency=self.analyzer.consistency(samples),
            speed_mps=fix.speed if fix else 0.0,
        )

    def _build_segment(self, samples: list, metadata: SegmentMetadata,
                       distress: list) -> RoadSegment:
        rms = self.analyzer.rms(samples)
        confidence = self._score_confidence(samples)
        start_fix = self._segment_start_fix or self._last_fix
        end_fix = self._last_fix

        common = dict(
            session_id=self._session_id,
            start_distance_m=self._segment_start_m,
            end_distance_m=self._distance,
            roughness_rms=rms,
            consistency=self.analyzer.consistency(samples),
            confidence=confidence.score,
            condition_auto=self.analyzer.classify(rms),
            manual_condition=metadata.manual_condition,
            name=metadata.name,
            surface_type=metadata.surface_type,
            notes=metadata.notes,
            photo_path=metadata.photo_path,
            audio_path=metadata.audio_path,
            start_lat=start_fix.lat if start_fix else 0.0,
            start_lon=start_fix.lon if start_fix else 0.0,
            end_lat=end_fix.lat if end_fix else 0.0,
            end_lon=end_fix.lon if end_fix else 0.0,
            created_at_ms=end_fix.timestamp_ms if end_fix else _now_ms(),
        )

        if self.mode is SurveyMode.SDI:
            score = self.sdi.calculate(distress)
            return SdiSegment(items=distress, sdi_score=score,
                              sdi_category=self.sdi.categorize(score), **common)
        elif self.mode is SurveyMode.PCI:
            result = self.pci.calculate(distress)
            return PciSegment(
                sample_area_m2=result.sample_area_m2,
                items=result.breakdown,
                pci_score=result.pci_score,
                pci_rating=result.rating.label,
                corrected_deduct_value=result.corrected_deduct_value,
                dominant_distress=result.dominant_distress,
                **common,
            )
        return RoadSegment(**common)

    # --- flushing (store I/O only happens on the executor thread) ---

    def flush(self, wait: bool = True) -> Transition:
        """Push buffered telemetry and retry pending segments.

        With wait=False the flush is queued and the value is its Future. After
        end() reported FAILED this also retries the session finalization.
        """
        with self._lock:
            if self._session_id is None or self._session_state is SessionState.DISCARDED:
                return self._reject("flush", f"session is {self._session_state.value}")
            task = self._finalize if (self._session_state is SessionState.ENDED
                                      and not self._finalized) else self._drain
        future = self._executor.submit(task)
        if not wait:
            return Transition.applied(future)
        if future.result():
            return Transition.applied()
        return Transition.failed("store unavailable, data kept for retry")

    def _schedule_flush(self):
        with self._telemetry_lock:
            if self._flush_scheduled:
                return
            self._flush_scheduled = True
            self._last_flush = self._clock()
        self._executor.submit(self._drain)

    def _drain(self) -> bool:
        with self._telemetry_lock:
            self._flush_scheduled = False
            batch, self._telemetry = self._telemetry, []

        ok = True
        if batch:
            try:
                self.store.insert_telemetry_batch(self._session_id, batch)
                logger.debug("Flushed %d telemetry samples", len(batch))
            except StorageError as e:
                logger.warning("Telemetry flush failed, re-queued %d samples: %s", len(batch), e)
                with self._telemetry_lock:
                    self._telemetry[0:0] = batch
                ok = False
        return self._retry_pending() and ok

    def _retry_pending(self) -> bool:
        with self._pending_lock:
            pending, self._pending_segments = self._pending_segments, []
        for i, segment in enumerate(pending):
            try:
                segment.id = self.store.insert_segment(segment)
            except StorageError as e:
                logger.warning("Segment retry failed, %d still pending: %s", len(pending) - i, e)
                with self._pending_lock:
                    self._pending_segments[0:0] = pending[i:]
                return False
            logger.info("Pending segment %d stored", segment.id)
        return True

    def _persist_segment(self, segment: RoadSegment) -> RoadSegment:
        self._drain()
        # Earlier failures go first to keep segments in order
        with self._pending_lock:
            if self._pending_segments:
                self._pending_segments.append(segment)
                return None
        try:
            segment_id = self.store.insert_segment(segment)
        except StorageError as e:
            logger.warning("Segment insert failed, kept for retry: %s", e)
            with self._pending_lock:
                self._pending_segments.append(segment)
            return None
        return replace(segment, id=segment_id)

    def _finalize(self) -> bool:
        ok = self._drain()
        try:
            segments = self.store.get_segments_for_session(self._session_id)
            confidences = [s.confidence for s in segments]
            self._session.avg_confidence = (int(sum(confidences) / len(confidences))
                                            if confidences else 0)
            self.store.update_session(replace(self._session))
        except StorageError as e:
            logger.warning("Session %d finalization failed: %s", self._session_id, e)
            return False
        self._finalized = ok
        return ok

    def _delete_session(self) -> bool:
        with self._telemetry_lock:
            self._telemetry = []
        with self._pending_lock:
            self._pending_segments = []
        try:
            self.store.delete_session(self._session_id)
        except StorageError as e:
            logger.warning("Session %d delete failed: %s", self._session_id, e)
            return False
        return True

    # --- observables ---

    def add_listener(self, fn):
        """Call fn(EngineSnapshot) after every accepted location fix."""
        self._listeners.append(fn)

    def remove_listener(self, fn):
        self._listeners.remove(fn)

    @property
    def session_state(self) -> SessionState:
        return self._session_state

    @property
    def segment_state(self) -> SegmentState:
        return self._segment_state

    @property
    def session_id(self) -> int:
        return self._session_id

    @property
    def distance_m(self) -> float:
        return self._distance

    @property
    def segment_active(self) -> bool:
        return self._segment_state is SegmentState.ACTIVE

    @property
    def roughness(self) -> float:
        return self.processor.roughness

    @property
    def roughness_history(self) -> list:
        return self.processor.history

    @property
    def confidence(self) -> int:
        """Live confidence over the open segment's samples and the latest fix."""
        with self._segment_lock:
            samples = list(self._segment_samples)
        return self._score_confidence(samples).score

    def snapshot(self) -> EngineSnapshot:
        with self._telemetry_lock:
            buffered = len(self._telemetry)
        with self._pending_lock:
            pending = len(self._pending_segments)
        return EngineSnapshot(
            session_state=self._session_state,
            segment_state=self._segment_state,
            session_id=self._session_id,
            distance_m=self._distance,
            roughness=self.roughness,
            confidence=self.confidence,
            segment_start_m=self._segment_start_m,
            buffered_samples=buffered,
            pending_segments=pending,
        )
