"""Catalog item and store connection persistence used by the sync coordinator."""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from orchestrator.models import EPOCH, CatalogItem, StoreConnection, SyncStatus, utcnow
from orchestrator.sync.adapters import CatalogRecord

logger = structlog.get_logger()


class _SessionScope:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class CatalogStore(_SessionScope):
    """Synced products, keyed by (workspace, marketplace, external id)."""

    def watermark(self, workspace_id: str, connection_id: str) -> datetime:
        """Newest source update time among the connection's items, or the epoch."""
        with self.session() as db:
            newest = (
                db.query(func.max(CatalogItem.source_updated_at))
                .filter(CatalogItem.workspace_id == workspace_id, CatalogItem.connection_id == connection_id)
                .scalar()
            )
        return newest or EPOCH

    def delete_for_connection(self, workspace_id: str, connection_id: str) -> int:
        with self.session() as db:
            deleted = (
                db.query(CatalogItem)
                .filter(CatalogItem.workspace_id == workspace_id, CatalogItem.connection_id == connection_id)
                .delete(synchronize_session=False)
            )
            db.commit()
        logger.info("Catalog items deleted for full resync", connection_id=connection_id, count=deleted)
        return deleted

    def upsert(self, workspace_id: str, connection_id: str, marketplace: str, record: CatalogRecord) -> CatalogItem:
        """Insert or update one item; a concurrent insert of the same key turns into an update."""
        values = {
            "connection_id": connection_id,
            "title": record.title,
            "status": record.status,
            "data": record.data,
            "source_updated_at": record.source_updated_at,
            "synced_at": utcnow(),
        }
        with self.session() as db:
            item = self._find(db, workspace_id, marketplace, record.external_id)
            if item is None:
                item = CatalogItem(workspace_id=workspace_id, marketplace=marketplace,
                                   external_id=record.external_id, **values)
                db.add(item)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    item = self._find(db, workspace_id, marketplace, record.external_id)
                    for key, value in values.items():
                        setattr(item, key, value)
                    db.commit()
            else:
                for key, value in values.items():
                    setattr(item, key, value)
                db.commit()
            db.refresh(item)
            return item

    def get(self, workspace_id: str, marketplace: str, external_id: str) -> Optional[CatalogItem]:
        with self.session() as db:
            return self._find(db, workspace_id, marketplace, external_id)

    def count(self, workspace_id: str, connection_id: str) -> int:
        with self.session() as db:
            return (
                db.query(func.count(CatalogItem.id))
                .filter(CatalogItem.workspace_id == workspace_id, CatalogItem.connection_id == connection_id)
                .scalar()
            ) or 0

    @staticmethod
    def _find(db: Session, workspace_id: str, marketplace: str, external_id: str) -> Optional[CatalogItem]:
        return (
            db.query(CatalogItem)
            .filter(
                CatalogItem.workspace_id == workspace_id,
                CatalogItem.marketplace == marketplace,
                CatalogItem.external_id == external_id,
            )
            .first()
        )


class ConnectionStore(_SessionScope):
    """Marketplace store connections and their sync bookkeeping."""

    def create(self, workspace_id: str, user_id: str, marketplace: str,
               credentials: Dict[str, Any], is_active: bool = True) -> StoreConnection:
        connection = StoreConnection(
            workspace_id=workspace_id,
            user_id=user_id,
            marketplace=marketplace,
            credentials=credentials,
            is_active=is_active,
        )
        with self.session() as db:
            db.add(connection)
            db.commit()
            db.refresh(connection)
            return connection

    def get(self, connection_id: str, workspace_id: str) -> Optional[StoreConnection]:
        with self.session() as db:
            return (
                db.query(StoreConnection)
                .filter(StoreConnection.id == connection_id, StoreConnection.workspace_id == workspace_id)
                .first()
            )

    def mark_syncing(self, connection_id: str) -> None:
        self._update(connection_id, sync_status=SyncStatus.SYNCING.value)

    def mark_completed(self, connection_id: str, synced_at: Optional[datetime] = None) -> None:
        self._update(connection_id, sync_status=SyncStatus.COMPLETED.value,
                     last_sync_at=synced_at or utcnow(), last_error=None)

    def mark_failed(self, connection_id: str, error: str) -> None:
        self._update(connection_id, sync_status=SyncStatus.FAILED.value, last_error=error)

    def _update(self, connection_id: str, **values: Any) -> None:
        with self.session() as db:
            connection = db.get(StoreConnection, connection_id)
            if connection is None:
                logger.warning("Store connection vanished during sync", connection_id=connection_id)
                return
            for key, value in values.items():
                setattr(connection, key, value)
            db.commit()
