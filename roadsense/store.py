"""
Durable storage for sessions, telemetry and segments.

The engine only depends on the SurveyStore protocol. Two implementations:

- MemoryStore: dict-backed, thread-safe, for tests and one-off replays
- SqlStore:    SQLAlchemy ORM over any supported database URL

Implementations raise StorageError for every failure; the engine handles
nothing else.
"""

import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Protocol

from sqlalchemy import Column, Float, ForeignKey, Integer, String, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StorageError
from .models import (
    Condition,
    PciDistressItem,
    PciDistressType,
    PciSegment,
    RoadSegment,
    SdiDistressItem,
    SdiDistressType,
    SdiSegment,
    Severity,
    SurveyMode,
    SurveySession,
    TelemetrySample,
)

logger = logging.getLogger(__name__)


class SurveyStore(Protocol):

    def create_session(self, session: SurveySession) -> int: ...

    def update_session(self, session: SurveySession) -> None: ...

    def get_session(self, session_id: int) -> SurveySession: ...

    def delete_session(self, session_id: int) -> None: ...

    def insert_telemetry_batch(self, session_id: int, samples: list) -> None: ...

    def get_telemetry(self, session_id: int) -> list: ...

    def insert_segment(self, segment: RoadSegment) -> int: ...

    def update_segment_condition(self, segment_id: int, condition: Condition) -> None: ...

    def get_segments_for_session(self, session_id: int) -> list: ...


# ===== In-memory =====

class MemoryStore:

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._sessions = {}
        self._telemetry = {}
        self._segments = {}

    def create_session(self, session: SurveySession) -> int:
        with self._lock:
            session_id = next(self._ids)
            self._sessions[session_id] = replace(session, id=session_id)
            self._telemetry[session_id] = []
            self._segments[session_id] = []
            return session_id

    def update_session(self, session: SurveySession) -> None:
        with self._lock:
            if session.id not in self._sessions:
                raise StorageError(f"Unknown session {session.id}")
            self._sessions[session.id] = replace(session)

    def get_session(self, session_id: int) -> SurveySession:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def delete_session(self, session_id: int) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._telemetry.pop(session_id, None)
            self._segments.pop(session_id, None)

    def insert_telemetry_batch(self, session_id: int, samples: list) -> None:
        with self._lock:
            if session_id not in self._telemetry:
                raise StorageError(f"Unknown session {session_id}")
            self._telemetry[session_id].extend(samples)

    def get_telemetry(self, session_id: int) -> list:
        with self._lock:
            return list(self._telemetry.get(session_id, []))

    def insert_segment(self, segment: RoadSegment) -> int:
        with self._lock:
            if segment.session_id not in self._segments:
                raise StorageError(f"Unknown session {segment.session_id}")
            segment_id = next(self._ids)
            self._segments[segment.session_id].append(replace(segment, id=segment_id))
            return segment_id

    def update_segment_condition(self, segment_id: int, condition: Condition) -> None:
        with self._lock:
            for segments in self._segments.values():
                for i, segment in enumerate(segments):
                    if segment.id == segment_id:
                        segments[i] = segment.with_override(condition)
                        return
        raise StorageError(f"Unknown segment {segment_id}")

    def get_segments_for_session(self, session_id: int) -> list:
        with self._lock:
            return [replace(s) for s in self._segments.get(session_id, [])]


# ===== SQLAlchemy =====

Base = declarative_base()


class SessionRow(Base):
    __tablename__ = "survey_sessions"

    id = Column(Integer, primary_key=True, index=True)
    start_time_ms = Column(Integer, nullable=False)
    end_time_ms = Column(Integer, nullable=True)
    mode = Column(String, default=SurveyMode.GENERAL.value)
    road_name = Column(String, default="")
    surveyor_name = Column(String, default="")
    device_model = Column(String, default="")
    total_distance_m = Column(Float, default=0.0)
    avg_confidence = Column(Integer, default=0)
    start_lat = Column(Float, default=0.0)
    start_lon = Column(Float, default=0.0)
    end_lat = Column(Float, default=0.0)
    end_lon = Column(Float, default=0.0)


class TelemetryRow(Base):
    __tablename__ = "telemetry_samples"

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("survey_sessions.id", ondelete="CASCADE"), index=True)
    timestamp_ms = Column(Integer, index=True)
    lat = Column(Float)
    lon = Column(Float)
    altitude = Column(Float)
    speed = Column(Float)
    accel_x = Column(Float)
    accel_y = Column(Float)
    accel_z = Column(Float)
    roughness = Column(Float)
    gps_accuracy_m = Column(Float)
    cumulative_distance_m = Column(Float)


class SegmentRow(Base):
    __tablename__ = "road_segments"

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("survey_sessions.id", ondelete="CASCADE"), index=True)
    mode = Column(String, nullable=False)
    start_distance_m = Column(Float)
    end_distance_m = Column(Float)
    roughness_rms = Column(Float)
    consistency = Column(Float)
    confidence = Column(Integer)
    condition_auto = Column(String)
    manual_condition = Column(String, nullable=True)
    name = Column(String, default="")
    surface_type = Column(String, default="")
    notes = Column(String, default="")
    photo_path = Column(String, default="")
    audio_path = Column(String, default="")
    start_lat = Column(Float, default=0.0)
    start_lon = Column(Float, default=0.0)
    end_lat = Column(Float, default=0.0)
    end_lon = Column(Float, default=0.0)
    created_at_ms = Column(Integer, default=0)
    # SDI
    sdi_score = Column(Integer, nullable=True)
    sdi_category = Column(String, nullable=True)
    # PCI
    sample_area_m2 = Column(Float, nullable=True)
    pci_score = Column(Integer, nullable=True)
    pci_rating = Column(String, nullable=True)
    corrected_deduct_value = Column(Float, nullable=True)
    dominant_distress = Column(String, nullable=True)


class DistressRow(Base):
    __tablename__ = "distress_items"

    id = Column(Integer, primary_key=True)
    segment_id = Column(Integer, ForeignKey("road_segments.id", ondelete="CASCADE"), index=True)
    position = Column(Integer)
    type = Column(String)
    severity = Column(String)
    quantity = Column(Float)
    density = Column(Float, nullable=True)        # PCI only
    deduct_value = Column(Float, nullable=True)   # PCI only


SESSION_FIELDS = ("start_time_ms", "end_time_ms", "road_name", "surveyor_name", "device_model",
                  "total_distance_m", "avg_confidence", "start_lat", "start_lon",
                  "end_lat", "end_lon")
TELEMETRY_FIELDS = ("timestamp_ms", "lat", "lon", "altitude", "speed", "accel_x", "accel_y",
                    "accel_z", "roughness", "gps_accuracy_m", "cumulative_distance_m")
SEGMENT_FIELDS = ("start_distance_m", "end_distance_m", "roughness_rms", "consistency",
                  "confidence", "name", "surface_type", "notes", "photo_path", "audio_path",
                  "start_lat", "start_lon", "end_lat", "end_lon", "created_at_ms")


class SqlStore:
    """SurveyStore backed by SQLAlchemy. Defaults to a private in-memory SQLite database."""

    def __init__(self, url: str = "sqlite://", echo: bool = False):
        kwargs = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each thread sees its own empty database
                kwargs["poolclass"] = StaticPool
        self.url = url
        self._lock = threading.Lock()
        try:
            self.engine = create_engine(url, **kwargs)
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Cannot open database {url}: {e}") from e
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @contextmanager
    def _db(self):
        with self._lock:
            db = self._session_factory()
            try:
                yield db
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(str(e)) from e
            finally:
                db.close()

    def close(self):
        self.engine.dispose()

    # --- sessions ---

    def create_session(self, session: SurveySession) -> int:
        with self._db() as db:
            row = SessionRow(mode=session.mode.value,
                             **{f: getattr(session, f) for f in SESSION_FIELDS})
            db.add(row)
            db.flush()
            return row.id

    def update_session(self, session: SurveySession) -> None:
        with self._db() as db:
            row = db.get(SessionRow, session.id)
            if row is None:
                raise StorageError(f"Unknown session {session.id}")
            row.mode = session.mode.value
            for f in SESSION_FIELDS:
                setattr(row, f, getattr(session, f))

    def get_session(self, session_id: int) -> SurveySession:
        with self._db() as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                return None
            return SurveySession(id=row.id, mode=SurveyMode(row.mode),
                                 **{f: getattr(row, f) for f in SESSION_FIELDS})

    def delete_session(self, session_id: int) -> None:
        with self._db() as db:
            segment_ids = [r.id for r in db.query(SegmentRow.id).filter_by(session_id=session_id)]
            if segment_ids:
                db.query(DistressRow).filter(DistressRow.segment_id.in_(segment_ids)).delete(
                    synchronize_session=False)
            db.query(SegmentRow).filter_by(session_id=session_id).delete()
            db.query(TelemetryRow).filter_by(session_id=session_id).delete()
            db.query(SessionRow).filter_by(id=session_id).delete()

    # --- telemetry ---

    def insert_telemetry_batch(self, session_id: int, samples: list) -> None:
        with self._db() as db:
            db.add_all([
                TelemetryRow(session_id=session_id,
                             **{f: getattr(s, f) for f in TELEMETRY_FIELDS})
                for s in samples
            ])

    def get_telemetry(self, session_id: int) -> list:
        with self._db() as db:
            rows = db.query(TelemetryRow).filter_by(session_id=session_id).order_by(TelemetryRow.id)
            return [TelemetrySample(session_id=r.session_id,
                                    **{f: getattr(r, f) for f in TELEMETRY_FIELDS})
                    for r in rows]

    # --- segments ---

    def insert_segment(self, segment: RoadSegment) -> int:
        with self._db() as db:
            row = SegmentRow(
                session_id=segment.session_id,
                mode=segment.mode.value,
                condition_auto=segment.condition_auto.value,
                manual_condition=segment.manual_condition.value if segment.manual_condition else None,
                **{f: getattr(segment, f) for f in SEGMENT_FIELDS},
            )
            if isinstance(segment, SdiSegment):
                row.sdi_score = segment.sdi_score
                row.sdi_category = segment.sdi_category
            elif isinstance(segment, PciSegment):
                row.sample_area_m2 = segment.sample_area_m2
                row.pci_score = segment.pci_score
                row.pci_rating = segment.pci_rating
                row.corrected_deduct_value = segment.corrected_deduct_value
                row.dominant_distress = (segment.dominant_distress.value
                                         if segment.dominant_distress else None)
            db.add(row)
            db.flush()

            for i, item in enumerate(getattr(segment, "items", [])):
                if isinstance(item, PciDistressItem):
                    db.add(DistressRow(segment_id=row.id, position=i, type=item.type.value,
                                       severity=item.severity.value, quantity=item.quantity,
                                       density=item.density, deduct_value=item.deduct_value))
                else:
                    db.add(DistressRow(segment_id=row.id, position=i, type=item.type.value,
                                       severity=item.severity.value, quantity=item.extent))
            return row.id

    def update_segment_condition(self, segment_id: int, condition: Condition) -> None:
        """Set or clear (None) the manual condition override of a stored segment."""
        with self._db() as db:
            row = db.get(SegmentRow, segment_id)
            if row is None:
                raise StorageError(f"Unknown segment {segment_id}")
            row.manual_condition = condition.value if condition else None

    def get_segments_for_session(self, session_id: int) -> list:
        with self._db() as db:
            rows = db.query(SegmentRow).filter_by(session_id=session_id).order_by(SegmentRow.id).all()
            return [self._to_segment(db, row) for row in rows]

    @staticmethod
    def _to_segment(db, row: SegmentRow) -> RoadSegment:
        common = dict(
            id=row.id,
            session_id=row.session_id,
            condition_auto=Condition(row.condition_auto),
            manual_condition=Condition(row.manual_condition) if row.manual_condition else None,
            **{f: getattr(row, f) for f in SEGMENT_FIELDS},
        )
        mode = SurveyMode(row.mode)
        if mode == SurveyMode.GENERAL:
            return RoadSegment(**common)

        items = db.query(DistressRow).filter_by(segment_id=row.id).order_by(DistressRow.position)
        if mode == SurveyMode.SDI:
            return SdiSegment(
                sdi_score=row.sdi_score,
                sdi_category=row.sdi_category,
                items=[SdiDistressItem(SdiDistressType(i.type), Severity(i.severity), i.quantity)
                       for i in items],
                **common,
            )
        return PciSegment(
            sample_area_m2=row.sample_area_m2,
            pci_score=row.pci_score,
            pci_rating=row.pci_rating,
            corrected_deduct_value=row.corrected_deduct_value,
            dominant_distress=(PciDistressType(row.dominant_distress)
                               if row.dominant_distress else None),
            items=[PciDistressItem(PciDistressType(i.type), Severity(i.severity), i.quantity,
                                   i.density, i.deduct_value)
                   for i in items],
            **common,
        )
