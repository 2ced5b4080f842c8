"""
Resume-token checkpoints for the sync workers.

One row per (stream_id, scope): the sync direction and the source database
it watches. Tokens are stored as MongoDB extended JSON so the typed values
inside them survive the round trip through a JSON column.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
import json
import logging

from bson import json_util
from prometheus_client import Counter
from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, JSON, String, UniqueConstraint, create_engine, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .change_feed import CheckpointError

logger = logging.getLogger(__name__)

Base = declarative_base()

checkpoint_saves_total = Counter(
    'cafesync_checkpoint_saves_total',
    'Resume token checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'cafesync_checkpoint_loads_total',
    'Resume token checkpoint loads',
    ['status']
)

# Locked or briefly unavailable database: retry, anything else surfaces
_retry_operational = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(OperationalError),
    reraise=True
)


class SyncCheckpoint(Base):
    """Last resume token seen by one sync direction on one source database."""
    __tablename__ = "sync_checkpoints"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    stream_id = Column(String(64), nullable=False, index=True)
    scope = Column(String(255), nullable=False)
    resume_token = Column(JSON, nullable=False)
    last_event_time = Column(DateTime, nullable=True)
    records_processed = Column(BigInteger, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('stream_id', 'scope', name='uq_sync_checkpoints_stream_scope'),
        Index('idx_sync_checkpoints_updated_at', 'updated_at'),
    )


def _encode_token(token: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json_util.dumps(token))


def _decode_token(stored: Dict[str, Any]) -> Dict[str, Any]:
    return json_util.loads(json.dumps(stored))


def _is_valid_token(token: Any) -> bool:
    # Server tokens carry _data; any non-empty document is accepted
    return isinstance(token, dict) and len(token) > 0


class CheckpointStore:
    """
    Persists change stream resume tokens through SQLAlchemy.

    SQLite by default; any SQLAlchemy URL works. Every call opens its own
    session, so the two worker threads can share one store.

    Example:
        >>> store = CheckpointStore("sqlite:///sync_checkpoints.db")
        >>> store.save_checkpoint("local_to_remote", "cafe", resume_token)
        >>> store.load_checkpoint("local_to_remote", "cafe")
    """

    def __init__(self, database_url: str):
        """
        Args:
            database_url: SQLAlchemy connection URL

        Raises:
            CheckpointError: If the database cannot be reached or prepared
        """
        try:
            if database_url.startswith("sqlite"):
                self.engine = create_engine(database_url, connect_args={"check_same_thread": False})
            else:
                self.engine = create_engine(database_url, pool_size=2, max_overflow=2, pool_pre_ping=True)

            self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)
            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

        except SQLAlchemyError as e:
            logger.error(f"Failed to open checkpoint store: {e}")
            raise CheckpointError(f"Checkpoint database unavailable: {e}") from e

        logger.info("Checkpoint store ready", extra={"dialect": self.engine.dialect.name})

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    def _find(self, session: Session, stream_id: str, scope: str, for_update: bool = False) -> Optional[SyncCheckpoint]:
        query = session.query(SyncCheckpoint).filter_by(stream_id=stream_id, scope=scope)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @_retry_operational
    def save_checkpoint(
        self,
        stream_id: str,
        scope: str,
        resume_token: Dict[str, Any],
        last_event_time: Optional[datetime] = None,
        records_processed: int = 0
    ) -> None:
        """
        Upsert the checkpoint for ``(stream_id, scope)``.

        Raises:
            CheckpointError: Invalid token, or the write failed
        """
        if not _is_valid_token(resume_token):
            raise CheckpointError("Invalid resume token structure")

        context = {"stream_id": stream_id, "scope": scope}
        try:
            with self._session() as session, session.begin():
                checkpoint = self._find(session, stream_id, scope, for_update=True)
                if checkpoint is None:
                    checkpoint = SyncCheckpoint(stream_id=stream_id, scope=scope)
                    session.add(checkpoint)
                checkpoint.resume_token = _encode_token(resume_token)
                checkpoint.records_processed = records_processed
                checkpoint.updated_at = datetime.utcnow()
                if last_event_time:
                    checkpoint.last_event_time = last_event_time

        except OperationalError:
            checkpoint_saves_total.labels(status='error').inc()
            raise

        except (IntegrityError, SQLAlchemyError) as e:
            checkpoint_saves_total.labels(status='error').inc()
            logger.error(f"Failed to save checkpoint: {e}", extra=context)
            raise CheckpointError(f"Failed to save checkpoint for {stream_id}/{scope}: {e}") from e

        checkpoint_saves_total.labels(status='success').inc()
        logger.debug(
            f"Saved checkpoint {stream_id}/{scope}",
            extra={**context, "records_processed": records_processed}
        )

    @_retry_operational
    def load_checkpoint(self, stream_id: str, scope: str) -> Optional[Dict[str, Any]]:
        """
        Resume token for ``(stream_id, scope)``, or None when absent or unusable.

        Raises:
            CheckpointError: If the read failed
        """
        context = {"stream_id": stream_id, "scope": scope}
        try:
            with self._session() as session:
                checkpoint = self._find(session, stream_id, scope)
                stored = checkpoint.resume_token if checkpoint else None
                records = checkpoint.records_processed if checkpoint else 0

        except OperationalError:
            checkpoint_loads_total.labels(status='error').inc()
            raise

        except SQLAlchemyError as e:
            checkpoint_loads_total.labels(status='error').inc()
            logger.error(f"Failed to load checkpoint: {e}", extra=context)
            raise CheckpointError(f"Failed to load checkpoint for {stream_id}/{scope}: {e}") from e

        if stored is None:
            checkpoint_loads_total.labels(status='not_found').inc()
            return None

        resume_token = _decode_token(stored)
        if not _is_valid_token(resume_token):
            checkpoint_loads_total.labels(status='invalid').inc()
            logger.warning("Ignoring checkpoint with an invalid resume token", extra=context)
            return None

        checkpoint_loads_total.labels(status='success').inc()
        logger.debug(f"Loaded checkpoint {stream_id}/{scope}", extra={**context, "records_processed": records})
        return resume_token

    def delete_checkpoint(self, stream_id: str, scope: str) -> None:
        """Forget the token, e.g. after the stream was invalidated."""
        try:
            with self._session() as session, session.begin():
                checkpoint = self._find(session, stream_id, scope)
                if checkpoint is not None:
                    session.delete(checkpoint)
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete checkpoint: {e}", extra={"stream_id": stream_id, "scope": scope})
            raise CheckpointError(f"Failed to delete checkpoint for {stream_id}/{scope}: {e}") from e

        logger.info(f"Cleared checkpoint {stream_id}/{scope}", extra={"stream_id": stream_id, "scope": scope})

    def get_all_checkpoints(self) -> List[Dict[str, Any]]:
        """Every stored checkpoint without its token, for status output."""
        try:
            with self._session() as session:
                return [
                    {
                        "stream_id": c.stream_id,
                        "scope": c.scope,
                        "records_processed": c.records_processed,
                        "last_event_time": c.last_event_time,
                        "updated_at": c.updated_at,
                    }
                    for c in session.query(SyncCheckpoint).order_by(SyncCheckpoint.stream_id)
                ]
        except SQLAlchemyError as e:
            raise CheckpointError(f"Failed to list checkpoints: {e}") from e

    def close(self) -> None:
        """Dispose of pooled connections."""
        self.engine.dispose()
        logger.info("Checkpoint store closed")
