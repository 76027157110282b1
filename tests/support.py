"""Shared builders for tests: an in-memory catalog and fully wired stores."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from capledger.application.attachments import AttachmentService
from capledger.application.exporter import ExportCollector
from capledger.application.history import HistoryManager
from capledger.application.importer import ImportReconciler
from capledger.application.lifecycle import LifecycleEngine
from capledger.application.tags import TagLedger
from capledger.domain.schemas import iso_z
from capledger.infrastructure.blobstore import InMemoryBlobStore
from capledger.infrastructure.catalog import CatalogItem, CatalogQuestion, ReferenceCatalog
from capledger.infrastructure.config import DatabaseConfig, SecurityConfig
from capledger.infrastructure.db import make_engine_and_session
from capledger.infrastructure.models import AssessmentORM
from capledger.infrastructure.uow import UnitOfWork

CASE_ITEM = "CM_Establish_Case"
MANAGE_ITEM = "CM_Manage_Case"
CLAIMS_ITEM = "FM_Pay_Claims"


def make_catalog() -> ReferenceCatalog:
    def item(code: str, name: str, group: str) -> CatalogItem:
        return CatalogItem(
            code=code,
            display_name=name,
            grouping_key=group,
            catalog_version="3.0",
            questions=tuple(CatalogQuestion(text=f"{name} question {i + 1}") for i in range(3)),
        )

    return ReferenceCatalog(
        [
            item(CASE_ITEM, "Establish Case", "Case Management"),
            item(MANAGE_ITEM, "Manage Case", "Case Management"),
            item(CLAIMS_ITEM, "Pay Claims", "Financial Management"),
        ],
        version="3.0",
    )


@dataclass
class Ledger:
    """One independent store with every service wired to it."""

    SessionLocal: sessionmaker[Session]
    uow: UnitOfWork
    blob_store: InMemoryBlobStore
    lifecycle: LifecycleEngine
    attachments: AttachmentService
    history: HistoryManager
    tags: TagLedger
    exporter: ExportCollector
    importer: ImportReconciler

    def set_updated_at(self, assessment_id: str, when: datetime) -> None:
        with self.uow.begin("assessments") as s:
            s.get(AssessmentORM, assessment_id).updated_at = when

    def finalized(self, item_code: str) -> AssessmentORM | None:
        return next(
            (a for a in self.lifecycle.list_assessments(item_code, "finalized")), None
        )


def build_ledger(catalog: ReferenceCatalog, sqlite_path: str = ":memory:") -> Ledger:
    _, SessionLocal = make_engine_and_session(
        DatabaseConfig(backend="sqlite", sqlite_path=sqlite_path), create_schema=True
    )
    uow = UnitOfWork(SessionLocal)
    blob_store = InMemoryBlobStore()
    lifecycle = LifecycleEngine(uow, catalog, blob_store)
    return Ledger(
        SessionLocal=SessionLocal,
        uow=uow,
        blob_store=blob_store,
        lifecycle=lifecycle,
        attachments=AttachmentService(uow, blob_store, lifecycle.rating_locks, SecurityConfig()),
        history=HistoryManager(uow),
        tags=TagLedger(uow),
        exporter=ExportCollector(uow, catalog, blob_store),
        importer=ImportReconciler(uow, blob_store, rating_locks=lifecycle.rating_locks),
    )


def finalize_with(ledger: Ledger, item_code: str, levels: list[int | None], tags=()) -> AssessmentORM:
    assessment = ledger.lifecycle.start(item_code, tags)
    for index, level in enumerate(levels):
        if level is not None:
            ledger.lifecycle.save_rating(assessment.id, index, level, f"note {index}")
    return ledger.lifecycle.finalize(assessment.id)


def shift_assessment(doc: dict[str, Any], item_code: str, **fields: Any) -> dict[str, Any]:
    """Rewrite camelCase fields of one exported assessment; datetimes are serialized."""
    for record in doc["data"]["assessments"]:
        if record["itemCode"] == item_code:
            for key, value in fields.items():
                record[key] = iso_z(value) if isinstance(value, datetime) else value
    return doc
