"""Database access for file records, the coordinate catalog and weather observations.

One long-lived session serves the driver's reads and file record writes and is
renewed after every timestep. Observation batches are written by worker threads,
each in its own short session and transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Generator, Iterable, List, Optional, Sequence

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Table,
    create_engine, func, select, text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from constants import UPSERT_BATCH_SIZE
from models import CoordinateRecord, FileRecord, FileValidity, Observation, ensure_utc
from parameters import Parameter
from logging_config import setup_logging

logger = setup_logging(__name__, level="INFO", log_name="converter")

Base = declarative_base()


class StoreUnavailableError(RuntimeError):
    """The database cannot be reached. Fatal for a conversion run."""


class FileRow(Base):
    __tablename__ = "files"

    name = Column(String, primary_key=True)
    modelrun = Column(DateTime, nullable=False, index=True)
    timestep = Column(Integer, nullable=False)
    parameter = Column(String, nullable=False)
    download_fails = Column(Integer, nullable=False, default=0)
    sufficient_size = Column(Boolean, nullable=False, default=False)
    download_date = Column(DateTime, nullable=True)
    decompressed = Column(Boolean, nullable=False, default=False)
    missing_coordinates = Column(Integer, nullable=False, default=0)
    valid_file = Column(Boolean, nullable=True)
    persisted = Column(Boolean, nullable=False, default=False)
    archivefile_deleted = Column(Boolean, nullable=False, default=False)
    gribfile_deleted = Column(Boolean, nullable=False, default=False)


class CoordinateRow(Base):
    __tablename__ = "icon_coordinates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    coordinate_type = Column(String, nullable=False, default="ICON")


weather_table = Table(
    "weather",
    Base.metadata,
    Column("coordinate_id", Integer, ForeignKey("icon_coordinates.id"), primary_key=True),
    Column("datum", DateTime, primary_key=True),
    *[Column(p.column, Float, nullable=True) for p in Parameter],
)

WEATHER_VALUE_COLUMNS = [p.column for p in Parameter]


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """All timestamps are UTC; the database holds them without zone."""
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _file_from_row(row: FileRow) -> FileRecord:
    return FileRecord(
        model_run=from_db_time(row.modelrun),
        timestep=row.timestep,
        parameter=Parameter[row.parameter],
        download_fails=row.download_fails or 0,
        sufficient_size=bool(row.sufficient_size),
        download_date=from_db_time(row.download_date),
        decompressed=bool(row.decompressed),
        missing_coordinates=row.missing_coordinates or 0,
        validity=FileValidity.from_flag(row.valid_file),
        persisted=bool(row.persisted),
        archive_deleted=bool(row.archivefile_deleted),
        decoded_file_deleted=bool(row.gribfile_deleted),
    )


def _row_from_file(record: FileRecord) -> FileRow:
    return FileRow(
        name=record.name,
        modelrun=to_db_time(record.model_run),
        timestep=record.timestep,
        parameter=record.parameter.name,
        download_fails=record.download_fails,
        sufficient_size=record.sufficient_size,
        download_date=to_db_time(record.download_date),
        decompressed=record.decompressed,
        missing_coordinates=record.missing_coordinates,
        valid_file=record.validity.as_flag(),
        persisted=record.persisted,
        archivefile_deleted=record.archive_deleted,
        gribfile_deleted=record.decoded_file_deleted,
    )


def _chunks(items: Sequence, size: int) -> Generator[Sequence, None, None]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class Store:
    def __init__(self, url: str, schema: Optional[str] = None, batch_size: int = UPSERT_BATCH_SIZE,
                 echo: bool = False):
        self.url = url
        self.batch_size = batch_size
        kwargs = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            # Batches are written from worker threads
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            kwargs.update(pool_pre_ping=True, pool_recycle=1800)
        engine = create_engine(url, **kwargs)
        if schema and engine.dialect.name != "sqlite":
            engine = engine.execution_options(schema_translate_map={None: schema})
        elif schema:
            logger.debug(f"Ignoring schema '{schema}' for SQLite database")
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._session: Session = self._session_factory()

    # ── connection management ────────────────────────────────────────────────

    def connect(self) -> "Store":
        """Verify the database is reachable. Raises StoreUnavailableError otherwise."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot connect to {self.url.split('@')[-1]}: {e}") from e
        logger.info(f"Database connection verified ({self.url.split('@')[-1]})")
        return self

    def create_tables(self):
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """Short-lived session committing on success and rolling back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def flush(self):
        self._session.commit()

    def renew_session(self):
        """Commit, close and reopen the long-lived session to release its identity map."""
        self._session.commit()
        self._session.close()
        self._session = self._session_factory()

    def close(self):
        try:
            self._session.commit()
        finally:
            self._session.close()
            self.engine.dispose()

    # ── file records ─────────────────────────────────────────────────────────

    def find_file(self, name: str) -> Optional[FileRecord]:
        row = self._session.get(FileRow, name)
        return _file_from_row(row) if row is not None else None

    def persist_file(self, record: FileRecord):
        self._session.merge(_row_from_file(record))
        self._session.commit()

    def persist_files(self, records: Iterable[FileRecord]):
        for record in records:
            self._session.merge(_row_from_file(record))
        self._session.commit()

    def oldest_model_run_with_unprocessed_files(self) -> Optional[datetime]:
        stmt = select(func.min(FileRow.modelrun)).where(
            FileRow.sufficient_size.is_(True),
            FileRow.persisted.is_(False),
            (FileRow.valid_file.is_(None)) | (FileRow.valid_file.is_(True)),
        )
        return from_db_time(self._session.execute(stmt).scalar())

    def newest_downloaded_model_run(self) -> Optional[datetime]:
        return from_db_time(self._session.execute(select(func.max(FileRow.modelrun))).scalar())

    def failed_downloads(self, since: datetime) -> List[FileRecord]:
        """Files of model runs since `since` that were too small or invalid."""
        stmt = (
            select(FileRow)
            .where(FileRow.modelrun >= to_db_time(since))
            .where((FileRow.sufficient_size.is_(False)) | (FileRow.valid_file.is_(False)))
            .order_by(FileRow.modelrun)
        )
        return [_file_from_row(r) for r in self._session.execute(stmt).scalars()]

    # ── coordinates ──────────────────────────────────────────────────────────

    def coordinates_in_rectangle(self, bounds: tuple[float, float, float, float]) -> List[CoordinateRecord]:
        min_lat, max_lat, min_lon, max_lon = bounds
        stmt = (
            select(CoordinateRow)
            .where(CoordinateRow.coordinate_type == "ICON")
            .where(CoordinateRow.latitude.between(min_lat, max_lat))
            .where(CoordinateRow.longitude.between(min_lon, max_lon))
            .order_by(CoordinateRow.id)
        )
        return [
            CoordinateRecord(r.latitude, r.longitude, id=r.id, coordinate_type=r.coordinate_type)
            for r in self._session.execute(stmt).scalars()
        ]

    def add_coordinates(self, coordinates: Iterable[CoordinateRecord]) -> List[CoordinateRecord]:
        rows = [
            CoordinateRow(id=c.id, latitude=c.latitude, longitude=c.longitude,
                          coordinate_type=c.coordinate_type)
            for c in coordinates
        ]
        with self.transaction() as session:
            session.add_all(rows)
            session.flush()
            return [CoordinateRecord(r.latitude, r.longitude, id=r.id, coordinate_type=r.coordinate_type)
                    for r in rows]

    # ── observations ─────────────────────────────────────────────────────────

    def find_observations(self, coordinates: Sequence[CoordinateRecord],
                          timestamp: datetime) -> Dict[int, Observation]:
        """Persisted observations at `timestamp` for the given catalog coordinates, by coordinate id."""
        by_id = {c.id: c for c in coordinates}
        found: Dict[int, Observation] = {}
        ids = list(by_id)
        for chunk in _chunks(ids, self.batch_size):
            stmt = select(weather_table).where(
                weather_table.c.datum == to_db_time(timestamp),
                weather_table.c.coordinate_id.in_(chunk),
            )
            for row in self._session.execute(stmt).mappings():
                obs = Observation(by_id[row["coordinate_id"]], from_db_time(row["datum"]))
                for p in Parameter:
                    obs.set(p, row[p.column])
                found[row["coordinate_id"]] = obs
        return found

    def _upsert_statement(self, rows: List[dict]):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(weather_table).values(rows)
        elif dialect == "sqlite":
            stmt = sqlite.insert(weather_table).values(rows)
        else:
            raise NotImplementedError(f"No upsert support for dialect {dialect}")
        return stmt.on_conflict_do_update(
            index_elements=[weather_table.c.coordinate_id, weather_table.c.datum],
            set_={col: stmt.excluded[col] for col in WEATHER_VALUE_COLUMNS},
        )

    def upsert_observations(self, batch: Sequence[Observation]) -> int:
        """Insert or update one batch in a single statement and transaction."""
        if not batch:
            return 0
        rows = []
        for obs in batch:
            row = obs.as_row()
            row["datum"] = to_db_time(row["datum"])
            rows.append(row)
        with self.transaction() as session:
            session.execute(self._upsert_statement(rows))
        return len(rows)
