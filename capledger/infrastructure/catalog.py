"""
Read-only reference catalog of assessable items.

Each item has a stable code, a grouping key (business area), a display name,
a catalog version and a fixed, ordered question list. The catalog is loaded
once per process behind ``get_catalog()`` and never mutated afterwards.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from .config import get_settings
from .exceptions import ConfigurationError, ItemNotFoundError
from .logging import get_logger

logger = get_logger(__name__)

# "CM_Establish_Case" from "CM_Establish_Case_BCM_v3.0.json"
_CODE_FROM_FILENAME = re.compile(r"([A-Z]{2}_[^_]+(?:_[^_]+)*?)_(?:BCM|BPT)_v")


@dataclass(frozen=True, slots=True)
class CatalogQuestion:
    text: str
    category: str = ""
    levels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CatalogItem:
    code: str
    display_name: str
    grouping_key: str
    catalog_version: str
    questions: tuple[CatalogQuestion, ...]

    @property
    def question_count(self) -> int:
        return len(self.questions)


def extract_item_code(file_name: str) -> str | None:
    match = _CODE_FROM_FILENAME.search(file_name)
    return match.group(1) if match else None


def item_from_document(
    doc: Mapping[str, Any], code: str | None = None, default_version: str = ""
) -> CatalogItem:
    """
    Build a CatalogItem from one capability document.

    Accepts ``item_code``/``process_code`` or an explicit ``code`` (file name derived).
    Questions come from ``maturity_model.capability_questions``.
    """
    code = code or doc.get("item_code") or doc.get("process_code")
    if not code:
        raise ConfigurationError("Catalog document has no item code", config_key="item_code")

    model = doc.get("maturity_model") or {}
    raw_questions = model.get("capability_questions") or doc.get("questions") or []
    questions = tuple(
        CatalogQuestion(
            text=str(q.get("question", "")),
            category=str(q.get("category", "")),
            levels=dict(q.get("levels") or {}),
        )
        for q in raw_questions
    )
    return CatalogItem(
        code=str(code),
        display_name=str(doc.get("process_name") or doc.get("display_name") or code),
        grouping_key=str(doc.get("business_area") or doc.get("grouping_key") or ""),
        catalog_version=str(doc.get("version") or default_version),
        questions=questions,
    )


class ReferenceCatalog:
    """
    Immutable lookup from item code to its question set and display metadata.

    Example:
        >>> catalog = ReferenceCatalog.from_directory("./catalog")
        >>> item = catalog.require("CM_Establish_Case")
        >>> item.question_count
        12
    """

    def __init__(self, items: Iterable[CatalogItem], version: str | None = None):
        ordered = sorted(items, key=lambda i: (i.grouping_key, i.display_name, i.code))
        self._items: dict[str, CatalogItem] = {item.code: item for item in ordered}
        self._version = version

    @classmethod
    def from_directory(cls, directory: str | Path, default_version: str = "") -> ReferenceCatalog:
        root = Path(directory)
        if not root.is_dir():
            raise ConfigurationError(
                f"Catalog directory not found: {root}", config_key="CATALOG_DIRECTORY"
            )

        items: list[CatalogItem] = []
        for path in sorted(root.rglob("*.json")):
            if "_BPT_" in path.name:
                continue
            try:
                doc = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationError(
                    f"Unreadable catalog file {path.name}: {e}", config_key="CATALOG_DIRECTORY"
                ) from e
            items.append(item_from_document(doc, extract_item_code(path.name), default_version))

        logger.info(f"Loaded {len(items)} catalog items from {root}")
        return cls(items)

    @property
    def version(self) -> str:
        if self._version is not None:
            return self._version
        for item in self._items.values():
            if item.catalog_version:
                return item.catalog_version
        return ""

    def by_code(self, code: str) -> CatalogItem | None:
        return self._items.get(code)

    def require(self, code: str) -> CatalogItem:
        item = self._items.get(code)
        if item is None:
            raise ItemNotFoundError(code)
        return item

    def items_in_group(self, grouping_key: str) -> list[CatalogItem]:
        return [item for item in self._items.values() if item.grouping_key == grouping_key]

    def grouping_keys(self) -> list[str]:
        return sorted({item.grouping_key for item in self._items.values()})

    def total_questions(self, codes: Iterable[str]) -> int:
        return sum(item.question_count for code in codes if (item := self.by_code(code)))

    def __contains__(self, code: object) -> bool:
        return code in self._items

    def __iter__(self) -> Iterator[CatalogItem]:
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)


@lru_cache(maxsize=1)
def get_catalog() -> ReferenceCatalog:
    """Process-wide catalog, loaded from ``CATALOG_DIRECTORY`` on first use."""
    config = get_settings().catalog
    if not config.directory or not Path(config.directory).is_dir():
        logger.warning(f"Catalog directory {config.directory!r} missing; using an empty catalog")
        return ReferenceCatalog([], version=config.default_version)
    return ReferenceCatalog.from_directory(config.directory, config.default_version)
