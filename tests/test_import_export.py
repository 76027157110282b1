"""
Tests for the export collector and the import reconciler.

The merge rules are exercised through real exports: a document is produced by
one store, optionally rewritten, and merged into the same or a second store.
"""

import io
import json
import zipfile
from datetime import timedelta

import pytest

from capledger.application.importer import ImportReconciler
from capledger.domain.models import CancellationToken
from capledger.infrastructure.config import Settings
from capledger.infrastructure.exceptions import OperationCancelledError, ValidationError
from capledger.utils.archive import read_archive
from tests.support import CASE_ITEM, CLAIMS_ITEM, MANAGE_ITEM, finalize_with, shift_assessment


def seed(ledger):
    """One finalized item with one history entry, plus one draft."""
    finalize_with(ledger, CASE_ITEM, [3, 3, 3], tags=["#baseline"])
    finalize_with(ledger, CASE_ITEM, [4, 4, None], tags=["#baseline"])
    draft = ledger.lifecycle.start(CLAIMS_ITEM, ["#draft"])
    ledger.lifecycle.save_rating(draft.id, 0, 2, "early days")
    return draft


def tag_counts(ledger):
    return {t.name: t.usage_count for t in ledger.tags.suggestions()}


class TestExportDocument:
    def test_full_export_shape(self, ledger):
        """The document is camelCase JSON with totals that match its data."""
        seed(ledger)

        doc = json.loads(ledger.exporter.export_json())

        assert doc["formatVersion"] == "1.0"
        assert doc["scope"] == "full"
        assert doc["exportedAt"].endswith("Z")
        assert doc["catalogVersion"] == "3.0"
        assert doc["metadata"]["totalAssessments"] == 2
        assert doc["metadata"]["totalRatings"] == 3
        assert doc["metadata"]["totalHistory"] == 1
        assert sorted(doc["metadata"]["itemCodes"]) == [CASE_ITEM, CLAIMS_ITEM]
        assert sorted(doc["metadata"]["groupingKeys"]) == ["Case Management", "Financial Management"]
        record = next(a for a in doc["data"]["assessments"] if a["itemCode"] == CASE_ITEM)
        assert record["score"] == 4.0
        assert record["finalizedAt"].endswith("Z")

    def test_item_scope(self, ledger):
        seed(ledger)

        document = ledger.exporter.collect("item", item_code=CASE_ITEM)

        assert {a.item_code for a in document.data.assessments} == {CASE_ITEM}
        assert document.scope_details.item_code == CASE_ITEM
        assert document.scope_details.display_name == "Establish Case"
        assert len(document.data.history) == 1
        # the tag ledger is always exported in full
        assert {t.name for t in document.data.tags} == {"#baseline", "#draft"}

    def test_grouping_scope(self, ledger):
        seed(ledger)

        document = ledger.exporter.collect("grouping_key", grouping_key="Financial Management")

        assert [a.item_code for a in document.data.assessments] == [CLAIMS_ITEM]
        assert document.data.history == []

    @pytest.mark.parametrize(
        "scope,field", [("item", "item_code"), ("grouping_key", "grouping_key"), ("nope", "scope")]
    )
    def test_scope_requires_detail(self, ledger, scope, field):
        with pytest.raises(ValidationError) as exc:
            ledger.exporter.collect(scope)
        assert exc.value.field == field

    def test_empty_store_exports_empty_document(self, ledger):
        document = ledger.exporter.collect()
        assert document.data.assessments == []
        assert document.metadata.total_assessments == 0

    def test_xlsx_summary(self, ledger):
        seed(ledger)

        payload = ledger.exporter.export_xlsx()

        with zipfile.ZipFile(io.BytesIO(payload)) as zf:
            assert "xl/worksheets/sheet1.xml" in zf.namelist()
            assert "Assessments" in zf.read("xl/workbook.xml").decode()

    def test_cancelled_export(self, ledger):
        seed(ledger)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelledError):
            ledger.exporter.export_archive(cancel_token=token)

    def test_collect_reports_progress(self, ledger):
        seed(ledger)
        steps = []

        ledger.exporter.collect(progress=lambda percent, message: steps.append((percent, message)))

        assert steps
        assert [p for p, _ in steps] == sorted(p for p, _ in steps)
        assert steps[-1] == (100, "Complete")

    def test_json_export_honours_progress_and_cancel(self, ledger):
        seed(ledger)
        steps = []

        text = ledger.exporter.export_json(progress=lambda p, m: steps.append(p))

        assert json.loads(text)["formatVersion"] == "1.0"
        assert steps[-1] == 100

        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            ledger.exporter.export_json(cancel_token=token)


class TestArchiveExport:
    def upload_evidence(self, ledger):
        a = ledger.lifecycle.start(CASE_ITEM)
        ledger.lifecycle.save_rating(a.id, 0, 4)
        attachment = ledger.attachments.upload(
            a.id, 0, "evidence.pdf", "application/pdf", b"%PDF-1.4 proof", "signed off"
        )
        ledger.lifecycle.finalize(a.id)
        return attachment

    def test_archive_layout(self, ledger):
        attachment = self.upload_evidence(ledger)
        steps: list[int] = []

        raw = ledger.exporter.export_archive(progress=lambda pct, msg: steps.append(pct))

        contents = read_archive(raw)
        assert contents.manifest["formatVersion"] == "1.0"
        assert contents.manifest["contents"] == {"dataJson": True, "attachments": True}
        assert contents.manifest["stats"]["totalAttachments"] == 1
        path = f"attachments/{CASE_ITEM}/evidence_{attachment.id}.pdf"
        assert contents.attachments == {path: b"%PDF-1.4 proof"}
        assert json.loads(contents.data_text)["data"]["attachments"][0]["id"] == attachment.id
        assert steps == [10, 30, 50, 80, 90, 100]

    def test_archive_without_attachments(self, ledger):
        self.upload_evidence(ledger)

        contents = read_archive(ledger.exporter.export_archive(include_attachments=False))

        assert contents.attachments == {}
        assert contents.manifest["contents"]["attachments"] is False

    def test_archive_restores_attachments(self, ledger, new_ledger):
        """Attachment payloads come back under their original ids on the new ratings."""
        attachment = self.upload_evidence(ledger)
        raw = ledger.exporter.export_archive()
        other = new_ledger()

        result = other.importer.import_archive(raw)

        assert result.success
        assert result.imported_as_current == 1
        assert result.attachments_restored == 1
        local = other.finalized(CASE_ITEM)
        restored = other.attachments.list_for_assessment(local.id)
        assert [att.id for att in restored] == [attachment.id]
        assert restored[0].description == "signed off"
        assert other.attachments.read(attachment.id) == b"%PDF-1.4 proof"
        rating = other.lifecycle.ratings_for(local.id)[0]
        assert rating.attachment_ids == [attachment.id]
        assert restored[0].rating_id == rating.id

        again = other.importer.import_archive(raw)
        assert again.skipped == 1
        assert again.attachments_restored == 0
        assert len(other.blob_store) == 1

    def test_not_a_zip(self, ledger):
        result = ledger.importer.import_archive(b"definitely not a zip")
        assert not result.success
        assert result.errors == ["Invalid ZIP file"]

    def test_zip_without_data(self, ledger):
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w") as zf:
            zf.writestr("manifest.json", "{}")

        result = ledger.importer.import_archive(bio.getvalue())
        assert result.errors == ["ZIP file missing data.json"]

    def test_zip_with_broken_data(self, ledger):
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w") as zf:
            zf.writestr("data.json", "{not json")

        result = ledger.importer.import_archive(bio.getvalue())
        assert result.errors == ["Invalid JSON in data.json"]

    def test_zip_with_non_utf8_data(self, ledger):
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w") as zf:
            zf.writestr("data.json", b"\xff\xfe{")

        result = ledger.importer.import_archive(bio.getvalue())

        assert not result.success
        assert result.errors == ["data.json is not valid UTF-8"]
        assert ledger.lifecycle.list_assessments() == []

    @staticmethod
    def flip_byte(raw: bytes, marker: bytes) -> bytes:
        """Corrupt one stored byte so the member fails its CRC check."""
        damaged = bytearray(raw)
        damaged[damaged.index(marker) + 1] ^= 0x01
        return bytes(damaged)

    def test_damaged_data_member(self, ledger):
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w", compression=zipfile.ZIP_STORED) as zf:
            zf.writestr("data.json", '{"formatVersion": "1.0"}')

        result = ledger.importer.import_archive(self.flip_byte(bio.getvalue(), b'"formatVersion"'))

        assert not result.success
        assert result.errors[0].startswith("Corrupt ZIP entry data.json")

    def test_damaged_attachment_member(self, ledger, new_ledger):
        self.upload_evidence(ledger)
        contents = read_archive(ledger.exporter.export_archive())
        bio = io.BytesIO()
        with zipfile.ZipFile(bio, "w", compression=zipfile.ZIP_STORED) as zf:
            zf.writestr("data.json", contents.data_text)
            for path, payload in contents.attachments.items():
                zf.writestr(path, payload)
        other = new_ledger()

        result = other.importer.import_archive(self.flip_byte(bio.getvalue(), b"%PDF"))

        assert not result.success
        assert result.errors[0].startswith(f"Corrupt ZIP entry attachments/{CASE_ITEM}/")
        assert other.lifecycle.list_assessments() == []


class TestImportIntoEmptyStore:
    def test_round_trip(self, ledger, new_ledger):
        """Everything exported is imported as current, with history and tags copied."""
        seed(ledger)
        other = new_ledger()
        steps: list[int] = []

        result = other.importer.import_json(
            ledger.exporter.export_json(), progress=lambda pct, msg: steps.append(pct)
        )

        assert result.success
        assert (result.imported_as_current, result.imported_as_history, result.skipped) == (2, 0, 0)
        assert steps[-1] == 100

        assert other.lifecycle.item_state(CASE_ITEM) == "finalized"
        assert other.lifecycle.item_state(CLAIMS_ITEM) == "in_progress"
        assert other.lifecycle.item_state(MANAGE_ITEM) == "absent"
        assert other.finalized(CASE_ITEM).score == 4.0
        assert [h.id for h in other.history.list_all()] == [h.id for h in ledger.history.list_all()]
        assert tag_counts(other) == tag_counts(ledger)

        original = ledger.finalized(CASE_ITEM)
        copy = other.finalized(CASE_ITEM)
        assert copy.id != original.id
        assert copy.updated_at == original.updated_at
        assert [(r.question_index, r.level, r.notes) for r in other.lifecycle.ratings_for(copy.id)] == [
            (r.question_index, r.level, r.notes) for r in ledger.lifecycle.ratings_for(original.id)
        ]

    def test_reimport_is_idempotent(self, ledger):
        """Importing a store's own export changes nothing."""
        seed(ledger)
        text = ledger.exporter.export_json()
        before = tag_counts(ledger)

        result = ledger.importer.import_json(text)

        assert result.success
        assert (result.imported_as_current, result.imported_as_history, result.skipped) == (0, 0, 2)
        reasons = {d.item_code: d.reason for d in result.details}
        assert reasons[CASE_ITEM] == "Identical to current assessment"
        assert reasons[CLAIMS_ITEM] == "Local assessment is newer and imported is not finalized"
        assert len(ledger.history.list_all()) == 1
        assert tag_counts(ledger) == before

    def test_reimport_after_round_trip(self, ledger, new_ledger):
        seed(ledger)
        text = ledger.exporter.export_json()
        other = new_ledger()
        other.importer.import_json(text)

        result = other.importer.import_json(text)

        assert result.skipped == 2
        assert len(other.history.list_all()) == 1


class TestMergeRules:
    def test_newer_import_replaces_and_keeps_history(self, ledger):
        """A newer incoming assessment becomes current; the local one moves to history."""
        a = finalize_with(ledger, CASE_ITEM, [3, 3, 3])
        later = a.updated_at + timedelta(hours=1)
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CASE_ITEM, updatedAt=later, finalizedAt=later, score=4.0)
        for rating in doc["data"]["ratings"]:
            rating["level"] = 4

        result = ledger.importer.import_document(doc)

        assert result.imported_as_current == 1
        assert result.details[0].reason == "Replaced older local assessment (moved to history)"
        current = ledger.finalized(CASE_ITEM)
        assert current.score == 4.0
        assert current.updated_at == later
        assert current.finalized_at == later
        assert [r.level for r in ledger.lifecycle.ratings_for(current.id)] == [4, 4, 4]

        history = ledger.history.list_by_item(CASE_ITEM)
        assert len(history) == 1
        assert history[0].score == 3.0
        assert history[0].snapshot_date == a.finalized_at

    def test_newer_draft_replaces_local_draft(self, ledger):
        draft = ledger.lifecycle.start(CLAIMS_ITEM)
        ledger.lifecycle.save_rating(draft.id, 0, 2)
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CLAIMS_ITEM, updatedAt=draft.updated_at + timedelta(minutes=5))
        doc["data"]["ratings"][0]["level"] = 5

        result = ledger.importer.import_document(doc)

        assert result.imported_as_current == 1
        assert ledger.history.list_all() == []
        assert ledger.lifecycle.ratings_for(draft.id)[0].level == 5

    def test_older_finalized_becomes_history(self, ledger):
        """An older finalized assessment is appended to history; local stays current."""
        a = finalize_with(ledger, CASE_ITEM, [3, 3, 3])
        earlier = a.updated_at - timedelta(days=30)
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CASE_ITEM, updatedAt=earlier, finalizedAt=earlier, score=2.0)
        for rating in doc["data"]["ratings"]:
            rating["level"] = 2

        result = ledger.importer.import_document(doc)

        assert result.imported_as_history == 1
        assert result.details[0].reason == "Added as historical entry (local is newer)"
        assert ledger.finalized(CASE_ITEM).score == 3.0
        history = ledger.history.list_by_item(CASE_ITEM)
        assert len(history) == 1
        assert history[0].score == 2.0
        assert history[0].snapshot_date == earlier
        assert [r["level"] for r in history[0].ratings] == [2, 2, 2]

        again = ledger.importer.import_document(doc)
        assert again.skipped == 1
        assert again.details[0].reason == "Historical entry already exists"
        assert len(ledger.history.list_by_item(CASE_ITEM)) == 1

    def test_older_draft_is_skipped(self, ledger):
        draft = ledger.lifecycle.start(CLAIMS_ITEM)
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CLAIMS_ITEM, updatedAt=draft.updated_at - timedelta(days=1))

        result = ledger.importer.import_document(doc)

        assert result.skipped == 1
        assert result.details[0].reason == "Local assessment is newer and imported is not finalized"

    def start_draft(self, ledger, levels):
        draft = ledger.lifecycle.start(CASE_ITEM)
        for index, level in enumerate(levels):
            ledger.lifecycle.save_rating(draft.id, index, level, "draft note")
        return ledger.lifecycle.get(draft.id)

    def test_older_finalized_beside_local_draft(self, ledger):
        """An older finalized copy only adds history when the local item is a draft."""
        draft = self.start_draft(ledger, [2, 3])
        earlier = draft.updated_at - timedelta(seconds=10)
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(
            doc, CASE_ITEM, status="finalized", updatedAt=earlier, finalizedAt=earlier, score=2.5
        )

        result = ledger.importer.import_document(doc)

        assert result.imported_as_history == 1
        assert result.details[0].action == "imported_history"
        history = ledger.history.list_by_item(CASE_ITEM)
        assert len(history) == 1
        assert history[0].score == 2.5
        assert [r["level"] for r in history[0].ratings] == [2, 3]

        local = ledger.lifecycle.get(draft.id)
        assert local.status == "in_progress"
        assert local.updated_at == draft.updated_at
        assert local.score is None
        assert [r.level for r in ledger.lifecycle.ratings_for(draft.id)] == [2, 3]
        assert ledger.finalized(CASE_ITEM) is None

    def test_newer_finalized_replaces_local_draft(self, ledger):
        draft = self.start_draft(ledger, [2, 3])
        later = draft.updated_at + timedelta(hours=1)
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(
            doc, CASE_ITEM, status="finalized", updatedAt=later, finalizedAt=later, score=4.0
        )
        for rating in doc["data"]["ratings"]:
            rating["level"] = 4

        result = ledger.importer.import_document(doc)

        assert result.imported_as_current == 1
        current = ledger.finalized(CASE_ITEM)
        assert current.id == draft.id
        assert current.score == 4.0
        assert current.finalized_at == later
        assert [r.level for r in ledger.lifecycle.ratings_for(current.id)] == [4, 4]
        assert ledger.lifecycle.item_state(CASE_ITEM) == "finalized"
        # the replaced draft was never finalized, so nothing is snapshotted
        assert ledger.history.list_all() == []

    def test_replaced_assessment_drops_its_attachments(self, ledger):
        draft = self.start_draft(ledger, [2])
        ledger.attachments.upload(draft.id, 0, "minutes.txt", "text/plain", b"agreed")
        assert len(ledger.blob_store) == 1
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CASE_ITEM, updatedAt=draft.updated_at + timedelta(hours=1))

        result = ledger.importer.import_document(doc)

        assert result.imported_as_current == 1
        assert ledger.attachments.list_for_assessment(draft.id) == []
        assert len(ledger.blob_store) == 0
        assert ledger.lifecycle.ratings_for(draft.id)[0].attachment_ids == []

    def test_timestamps_within_tolerance_are_identical(self, ledger):
        a = finalize_with(ledger, CASE_ITEM, [3])
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CASE_ITEM, updatedAt=a.updated_at + timedelta(milliseconds=500))

        result = ledger.importer.import_document(doc)

        assert result.details[0].reason == "Identical to current assessment"

    def test_scores_beyond_tolerance_differ(self, ledger):
        """Same timestamp but a different score is not the same state."""
        finalize_with(ledger, CASE_ITEM, [3])
        doc = json.loads(ledger.exporter.export_json())
        shift_assessment(doc, CASE_ITEM, score=3.5)

        result = ledger.importer.import_document(doc)

        assert result.imported_as_history == 1

    def test_existing_tag_counts_are_not_inflated(self, ledger, new_ledger):
        seed(ledger)
        other = new_ledger()
        for _ in range(3):
            other.tags.record_usage(["#baseline"])

        other.importer.import_json(ledger.exporter.export_json())

        counts = tag_counts(other)
        assert counts["#baseline"] == 3
        assert counts["#draft"] == tag_counts(ledger)["#draft"]

    def test_failed_item_does_not_block_others(self, ledger, new_ledger):
        """A per-item failure is reported and the rest of the document still applies."""
        seed(ledger)
        doc = json.loads(ledger.exporter.export_json())
        duplicate = dict(next(a for a in doc["data"]["assessments"] if a["itemCode"] == CASE_ITEM))
        duplicate["id"] = "duplicate-of-case"
        doc["data"]["assessments"].insert(1, duplicate)
        other = new_ledger()

        result = other.importer.import_document(doc)

        assert not result.success
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to import Establish Case:")
        assert sorted(d.action for d in result.details) == [
            "error",
            "imported_current",
            "imported_current",
        ]
        assert other.lifecycle.item_state(CLAIMS_ITEM) == "in_progress"
        assert len(other.lifecycle.list_assessments(CASE_ITEM)) == 1


class TestRejectedDocuments:
    def test_invalid_json(self, ledger):
        result = ledger.importer.import_json("{oops")
        assert not result.success
        assert result.errors == ["Invalid JSON format"]

    def test_unsupported_version_writes_nothing(self, ledger, new_ledger):
        seed(ledger)
        doc = json.loads(ledger.exporter.export_json())
        doc["formatVersion"] = "9.9"
        other = new_ledger()

        result = other.importer.import_document(doc)

        assert not result.success
        assert result.errors[0].startswith("Invalid export data structure:")
        assert "formatVersion" in result.errors[0]
        assert other.lifecycle.list_assessments() == []
        assert other.tags.suggestions() == []
        assert other.history.list_all() == []

    def test_missing_sections(self, ledger):
        result = ledger.importer.import_document({"formatVersion": "1.0", "scope": "full"})
        assert not result.success

    def test_dangling_rating(self, ledger):
        finalize_with(ledger, CASE_ITEM, [3])
        doc = json.loads(ledger.exporter.export_json())
        doc["data"]["ratings"][0]["assessmentId"] = "nowhere"

        outcome = ledger.importer.validate(doc)

        assert not outcome.ok
        assert "nowhere" in outcome.message

    def test_out_of_range_level(self, ledger):
        finalize_with(ledger, CASE_ITEM, [3])
        doc = json.loads(ledger.exporter.export_json())
        doc["data"]["ratings"][0]["level"] = 9

        assert not ledger.importer.validate(doc).ok

    def test_size_limit(self, ledger, monkeypatch):
        monkeypatch.setenv("SECURITY_MAX_IMPORT_SIZE_MB", "1")
        importer = ImportReconciler(ledger.uow, ledger.blob_store, Settings())

        result = importer.import_json(b" " * (1024 * 1024 + 1))

        assert not result.success
        assert "1 MB" in result.errors[0]

    def test_cancelled_import_writes_nothing(self, ledger, new_ledger):
        seed(ledger)
        token = CancellationToken()
        token.cancel()
        other = new_ledger()

        result = other.importer.import_json(ledger.exporter.export_json(), cancel_token=token)

        assert result.cancelled
        assert result.imported_as_current == 0
        assert other.lifecycle.list_assessments() == []
        assert other.history.list_all() == []
