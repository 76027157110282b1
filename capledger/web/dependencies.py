from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from capledger.application.attachments import AttachmentService
from capledger.application.exporter import ExportCollector
from capledger.application.history import HistoryManager
from capledger.application.importer import ImportReconciler
from capledger.application.lifecycle import LifecycleEngine
from capledger.application.tags import TagLedger
from capledger.infrastructure.blobstore import BlobStore, create_blob_store
from capledger.infrastructure.catalog import ReferenceCatalog, get_catalog
from capledger.infrastructure.config import DatabaseConfig, get_settings
from capledger.infrastructure.db import (
    create_database_engine,
    create_session_factory,
    initialise_database,
)
from capledger.infrastructure.locks import KeyedLocks
from capledger.infrastructure.notifier import ChangeNotifier
from capledger.infrastructure.uow import UnitOfWork


def get_db_config(request: Request) -> DatabaseConfig:
    config = getattr(request.app.state, "db_config", None)
    if config is None:
        config = get_settings().database
        request.app.state.db_config = config
    return config


def get_session_factory(request: Request) -> sessionmaker[Session]:
    config = get_db_config(request)
    cached_factory = getattr(request.app.state, "session_factory", None)
    cached_config = getattr(request.app.state, "session_factory_config", None)

    current_config_dict = config.model_dump()

    if cached_factory is not None and cached_config == current_config_dict:
        return cached_factory

    engine = create_database_engine(config)
    initialise_database(engine)
    session_factory = create_session_factory(engine)

    request.app.state.session_factory = session_factory
    request.app.state.session_factory_config = current_config_dict

    return session_factory


def _state_singleton(request: Request, name: str, factory):
    value = getattr(request.app.state, name, None)
    if value is None:
        value = factory()
        setattr(request.app.state, name, value)
    return value


def get_notifier(request: Request) -> ChangeNotifier:
    return _state_singleton(request, "notifier", ChangeNotifier)


def get_rating_locks(request: Request) -> KeyedLocks:
    """Process-wide, so the lifecycle engine and attachment uploads share one lock set."""
    return _state_singleton(request, "rating_locks", KeyedLocks)


def get_reference_catalog(request: Request) -> ReferenceCatalog:
    return _state_singleton(request, "catalog", get_catalog)


def get_blob_store(request: Request) -> BlobStore:
    return _state_singleton(request, "blob_store", create_blob_store)


def get_unit_of_work(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    notifier: ChangeNotifier = Depends(get_notifier),
) -> UnitOfWork:
    return UnitOfWork(session_factory, notifier)


def get_lifecycle(
    uow: UnitOfWork = Depends(get_unit_of_work),
    catalog: ReferenceCatalog = Depends(get_reference_catalog),
    blob_store: BlobStore = Depends(get_blob_store),
    locks: KeyedLocks = Depends(get_rating_locks),
) -> LifecycleEngine:
    return LifecycleEngine(uow, catalog, blob_store, locks)


def get_attachments(
    uow: UnitOfWork = Depends(get_unit_of_work),
    blob_store: BlobStore = Depends(get_blob_store),
    locks: KeyedLocks = Depends(get_rating_locks),
) -> AttachmentService:
    return AttachmentService(uow, blob_store, locks)


def get_history(uow: UnitOfWork = Depends(get_unit_of_work)) -> HistoryManager:
    return HistoryManager(uow)


def get_tags(uow: UnitOfWork = Depends(get_unit_of_work)) -> TagLedger:
    return TagLedger(uow)


def get_exporter(
    uow: UnitOfWork = Depends(get_unit_of_work),
    catalog: ReferenceCatalog = Depends(get_reference_catalog),
    blob_store: BlobStore = Depends(get_blob_store),
) -> ExportCollector:
    return ExportCollector(uow, catalog, blob_store)


def get_importer(
    uow: UnitOfWork = Depends(get_unit_of_work),
    blob_store: BlobStore = Depends(get_blob_store),
    locks: KeyedLocks = Depends(get_rating_locks),
) -> ImportReconciler:
    return ImportReconciler(uow, blob_store, rating_locks=locks)
