"""
Repository classes for the assessment store.

Each entity has its own module; this module re-exports them so callers can
write ``from capledger.infrastructure.repositories import RatingRepo``.
"""

from __future__ import annotations

from .repositories_assessment import AssessmentRepo
from .repositories_attachment import AttachmentRepo
from .repositories_history import HistoryRepo
from .repositories_rating import RatingRepo
from .repositories_tag import TagRepo

__all__ = [
    "AssessmentRepo",
    "AttachmentRepo",
    "HistoryRepo",
    "RatingRepo",
    "TagRepo",
]
