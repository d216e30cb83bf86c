"""
Composed FastAPI Dependencies

Everything a route needs comes from app.state, set once by the lifespan
hook (or replaced by tests): the queue broker, the session factory, the
file store and the bulk test store. Route handlers import from here.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docpipe.db.session import get_db
from docpipe.ingestion import BulkTestStore, IngestionService
from docpipe.queue.broker import QueueBroker


def get_queue_broker(request: Request) -> QueueBroker:
    return request.app.state.broker


def get_session_factory(request: Request) -> async_sessionmaker:
    return request.app.state.session_factory


def get_bulk_store(request: Request) -> BulkTestStore:
    return request.app.state.bulk_store


def get_ingestion_service(
    broker:  Annotated[QueueBroker, Depends(get_queue_broker)],
    factory: Annotated[async_sessionmaker, Depends(get_session_factory)],
    request: Request,
) -> IngestionService:
    return IngestionService(broker, file_store=request.app.state.file_store, session_factory=factory)


Broker    = Annotated[QueueBroker,      Depends(get_queue_broker)]
DB        = Annotated[AsyncSession,     Depends(get_db)]
Ingestion = Annotated[IngestionService, Depends(get_ingestion_service)]
BulkStore = Annotated[BulkTestStore,    Depends(get_bulk_store)]
