"""
Tag/usage ledger: a small frequency-ranked vocabulary of assessment tags.

Two update paths exist on purpose and are kept distinct:

- ``record_usage`` (lifecycle: start, finalize, tag edits) increments the
  count, creating the tag with a count of 1 when absent.
- ``ensure_present`` (import) inserts a missing tag and never changes counts,
  so an imported document does not inflate local frequencies.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from sqlalchemy.orm import Session

from ..infrastructure.exceptions import ValidationError
from ..infrastructure.logging import get_logger, log_operation
from ..infrastructure.models import TagORM
from ..infrastructure.repositories import AssessmentRepo, TagRepo
from ..infrastructure.uow import UnitOfWork

logger = get_logger(__name__)

TAG_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-_]*$")


def normalize_tag(tag: str) -> str:
    """``"  Provider-Module "`` -> ``"#provider-module"``."""
    cleaned = tag.strip().lower()
    return cleaned if cleaned.startswith("#") else f"#{cleaned}"


def is_valid_tag(tag: str) -> bool:
    """Letters, digits, hyphen and underscore after an optional leading ``#``."""
    return bool(TAG_PATTERN.match(tag.strip().removeprefix("#")))


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Normalize, validate and de-duplicate, keeping first-seen order."""
    result: list[str] = []
    for raw in tags:
        if not raw or not raw.strip():
            continue
        if not is_valid_tag(raw):
            raise ValidationError("tags", f"'{raw}' is not a valid tag", raw)
        tag = normalize_tag(raw)
        if tag not in result:
            result.append(tag)
    return result


def record_usage(session: Session, names: Iterable[str]) -> list[TagORM]:
    """Increment usage of every name inside the caller's transaction."""
    repo = TagRepo(session)
    return [repo.increment(name) for name in dict.fromkeys(names)]


class TagLedger:
    """
    Service facade over the tag table.

    Example:
        >>> ledger = TagLedger(uow)
        >>> ledger.record_usage(["#provider-module"])
        >>> [t.name for t in ledger.suggestions("prov")]
        ['#provider-module']
    """

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    @log_operation("record_tag_usage")
    def record_usage(self, names: Iterable[str]) -> list[TagORM]:
        with self.uow.begin("tags") as s:
            return record_usage(s, names)

    def ensure_present(self, name: str) -> bool:
        """Insert ``name`` with a zero count when absent; True if a row was created."""
        with self.uow.begin("tags") as s:
            return TagRepo(s).insert_if_absent(name) is not None

    def suggestions(self, prefix: str | None = None, limit: int | None = None) -> list[TagORM]:
        """Tags by usage, most used first; ``prefix`` matches with or without ``#``."""
        with self.uow.read() as s:
            tags = TagRepo(s).list_by_usage()

        if prefix:
            needle = prefix.strip().lower().removeprefix("#")
            tags = [t for t in tags if t.name.lower().removeprefix("#").startswith(needle)]
        return tags[:limit] if limit else tags

    def get(self, tag_id: str) -> TagORM:
        with self.uow.read() as s:
            return TagRepo(s).get_required(tag_id)

    def tags_in_use(self) -> list[str]:
        """Distinct tags carried by finalized assessments."""
        with self.uow.read() as s:
            return sorted(AssessmentRepo(s).finalized_tags())

    @log_operation("delete_tag")
    def delete(self, tag_id: str) -> None:
        with self.uow.begin("tags") as s:
            repo = TagRepo(s)
            repo.delete(repo.get_required(tag_id))
        logger.info(f"Deleted tag {tag_id}")
