"""
SQL write-through store for READY insight records.

Methods are synchronous; the cache runs them in a worker thread.
"""

import logging
from typing import Any, List, Tuple

from app.database import Base, make_engine, make_session_factory
from app.models import InsightSnapshot

logger = logging.getLogger(__name__)


class SQLInsightStore:
    def __init__(self, url: str):
        self.engine = make_engine(url)
        self.SessionLocal = make_session_factory(self.engine)
        Base.metadata.create_all(self.engine)
        logger.info(f"Insight snapshot store ready ({self.engine.dialect.name})")

    def save(self, record) -> None:
        with self.SessionLocal() as db:
            row = (
                db.query(InsightSnapshot)
                .filter(InsightSnapshot.namespace == record.namespace,
                        InsightSnapshot.fingerprint == record.fingerprint)
                .first()
            )
            if row is None:
                row = InsightSnapshot(namespace=record.namespace, fingerprint=record.fingerprint)
                db.add(row)
            row.value = record.value
            row.produced_at = record.produced_at
            row.source_version = record.source_version
            db.commit()

    def load_all(self) -> List[Tuple[str, str, Any, float, int]]:
        with self.SessionLocal() as db:
            rows = db.query(InsightSnapshot).order_by(InsightSnapshot.produced_at.asc()).all()
            return [(r.namespace, r.fingerprint, r.value, r.produced_at, r.source_version) for r in rows]

    def delete_namespace(self, namespace: str) -> int:
        with self.SessionLocal() as db:
            count = db.query(InsightSnapshot).filter(InsightSnapshot.namespace == namespace).delete()
            db.commit()
            return count

    def delete(self, namespace: str, fingerprint: str) -> int:
        with self.SessionLocal() as db:
            count = (
                db.query(InsightSnapshot)
                .filter(InsightSnapshot.namespace == namespace, InsightSnapshot.fingerprint == fingerprint)
                .delete()
            )
            db.commit()
            return count

    def close(self) -> None:
        self.engine.dispose()
