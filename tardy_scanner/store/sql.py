from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint, create_engine, func, select
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..exceptions import StoreError, SubscriptionFailure
from ..logger import setup_logger
from .base import (
    ChangeCallback,
    Document,
    ErrorCallback,
    ListenerRegistry,
    Unsubscribe,
    resolve_server_values,
    utc_now,
)

_TIMESTAMP_KEY = "$timestamp"


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    __tablename__ = "documents"
    __table_args__ = (UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc"),)

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(255), index=True)
    doc_id: Mapped[str] = mapped_column(String(64))
    body: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_TIMESTAMP_KEY: value.isoformat()}
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_TIMESTAMP_KEY}:
            return datetime.fromisoformat(value[_TIMESTAMP_KEY])
        return {key: _decode(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode(item) for item in value]
    return value


def _normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return f"postgresql://{database_url[len('postgres://'):]}"
    return database_url


class SqlCollectionStore:
    """Collection store persisted through SQLAlchemy, one JSON document per row.

    Change notifications are delivered to subscribers in this process after
    each committed write.
    """

    def __init__(self, database_url: str):
        url = _normalize_database_url(database_url)
        self.logger = setup_logger(self.__class__.__name__)
        self._listeners = ListenerRegistry()

        engine_kwargs: dict[str, Any] = {"future": True, "pool_pre_ping": True}
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite":
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if parsed.database in (None, "", ":memory:"):
                engine_kwargs["poolclass"] = StaticPool
            else:
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

        try:
            self.engine = create_engine(url, **engine_kwargs)
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to initialize document store: {exc}") from exc
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False, class_=Session)

    def _row(self, db: Session, path: str, doc_id: str) -> DocumentRow | None:
        return db.scalar(
            select(DocumentRow).where(DocumentRow.collection == path, DocumentRow.doc_id == doc_id)
        )

    def _list_sync(self, path: str) -> list[Document]:
        try:
            with self.SessionLocal() as db:
                rows = db.scalars(
                    select(DocumentRow).where(DocumentRow.collection == path).order_by(DocumentRow.pk.asc())
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read {path}: {exc}") from exc
        return [{"id": row.doc_id, **_decode(row.body)} for row in rows]

    def _get_sync(self, path: str, doc_id: str) -> Document | None:
        try:
            with self.SessionLocal() as db:
                row = self._row(db, path, doc_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read {path}/{doc_id}: {exc}") from exc
        if row is None:
            return None
        return {"id": row.doc_id, **_decode(row.body)}

    def _insert_sync(self, path: str, fields: Mapping[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        body = _encode(resolve_server_values(fields, utc_now()))
        try:
            with self.SessionLocal() as db:
                db.add(DocumentRow(collection=path, doc_id=doc_id, body=body))
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to create document in {path}: {exc}") from exc
        return doc_id

    def _put_sync(self, path: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        body = _encode(resolve_server_values(fields, utc_now()))
        try:
            with self.SessionLocal() as db:
                row = self._row(db, path, doc_id)
                if row is None:
                    db.add(DocumentRow(collection=path, doc_id=doc_id, body=body))
                else:
                    row.body = body
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to save {path}/{doc_id}: {exc}") from exc

    def _update_sync(self, path: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        changes = _encode(resolve_server_values(partial, utc_now()))
        try:
            with self.SessionLocal() as db:
                row = self._row(db, path, doc_id)
                if row is None:
                    raise StoreError(f"Document {doc_id} not found in {path}.")
                # Reassign so the JSON column is flagged dirty.
                row.body = {**row.body, **changes}
                db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to update {path}/{doc_id}: {exc}") from exc

    def _delete_sync(self, path: str, doc_id: str) -> None:
        try:
            with self.SessionLocal() as db:
                row = self._row(db, path, doc_id)
                if row is not None:
                    db.delete(row)
                    db.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to delete {path}/{doc_id}: {exc}") from exc

    async def _publish(self, path: str) -> None:
        if not self._listeners.has(path):
            return
        try:
            items = await asyncio.to_thread(self._list_sync, path)
        except StoreError as exc:
            self.logger.error("Live feed for %s failed: %s", path, exc)
            self._listeners.fail(path, SubscriptionFailure(str(exc)))
            return
        self._listeners.notify(path, items)

    def subscribe(self, path: str, on_change: ChangeCallback, on_error: ErrorCallback) -> Unsubscribe:
        unsubscribe = self._listeners.add(path, on_change, on_error)
        try:
            items = self._list_sync(path)
        except StoreError as exc:
            on_error(SubscriptionFailure(str(exc)))
        else:
            on_change(items)
        return unsubscribe

    async def create(self, path: str, fields: Mapping[str, Any]) -> str:
        doc_id = await asyncio.to_thread(self._insert_sync, path, fields)
        await self._publish(path)
        return doc_id

    async def put(self, path: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._put_sync, path, doc_id, fields)
        await self._publish(path)

    async def update(self, path: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._update_sync, path, doc_id, partial)
        await self._publish(path)

    async def delete(self, path: str, doc_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, path, doc_id)
        await self._publish(path)

    async def get(self, path: str, doc_id: str) -> Document | None:
        return await asyncio.to_thread(self._get_sync, path, doc_id)

    async def list(self, path: str) -> list[Document]:
        return await asyncio.to_thread(self._list_sync, path)

    def close(self) -> None:
        self.engine.dispose()
