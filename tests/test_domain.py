"""
Tests for scoring rules, merge comparisons and input/document validation.
"""

import json
import math
from datetime import datetime, timedelta, timezone

import pytest

from capledger.domain.models import CancellationToken, ImportItemResult, ImportResult
from capledger.domain.schemas import (
    AttachmentInput,
    RatingInput,
    TagsInput,
    as_naive_utc,
    iso_z,
    validate_document,
    validate_input,
)
from capledger.domain.services import (
    ScoringService,
    clamp_rating,
    compute_score,
    is_same_state,
    progress_percent,
    round_score,
    scores_match,
    timestamps_match,
)
from capledger.infrastructure.exceptions import InvalidRatingError
from tests.support import CASE_ITEM, CLAIMS_ITEM, MANAGE_ITEM, finalize_with


class TestScoring:
    def test_mean_of_answered_levels(self):
        assert compute_score([3, 4, None]) == 3.5
        assert compute_score([5]) == 5.0

    def test_nothing_answered(self):
        assert compute_score([]) is None
        assert compute_score([None, None]) is None

    @pytest.mark.parametrize(
        "value,expected", [(3.25, 3.3), (3.24, 3.2), (1.05, 1.1), (4.95, 5.0), (2.0, 2.0)]
    )
    def test_round_half_up(self, value, expected):
        assert round_score(value) == expected

    def test_clamp_rating(self):
        assert clamp_rating(None) is None
        assert clamp_rating(5) == 5
        for bad in (0, 6, "4", 4.0, False):
            with pytest.raises(InvalidRatingError):
                clamp_rating(bad)

    def test_progress_percent(self):
        assert progress_percent(0, 0) == 0
        assert progress_percent(1, 3) == 33
        assert progress_percent(3, 3) == 100


class TestSameState:
    now = datetime(2026, 3, 1, 12, 0, 0)

    def test_timestamp_tolerance_is_exclusive(self):
        assert timestamps_match(self.now, self.now + timedelta(milliseconds=999), 1000)
        assert not timestamps_match(self.now, self.now + timedelta(milliseconds=1000), 1000)

    def test_scores_need_both_values(self):
        assert scores_match(3.0, 3.005, 0.01)
        assert not scores_match(3.0, 3.02, 0.01)
        assert not scores_match(None, 3.0, 0.01)
        assert not scores_match(None, None, 0.01)

    def test_same_state_requires_both(self):
        assert is_same_state(self.now, self.now, 3.0, 3.0, 1000, 0.01)
        assert not is_same_state(self.now, self.now, None, None, 1000, 0.01)
        assert not is_same_state(self.now, self.now + timedelta(seconds=5), 3.0, 3.0, 1000, 0.01)


class TestInputSchemas:
    def test_rating_input(self):
        """Valid ratings pass; out-of-range levels and negative indexes fail."""
        assert validate_input(RatingInput, {"question_index": 0, "level": 4}).success

        result = validate_input(RatingInput, {"question_index": -1, "level": 7})
        assert not result.success
        assert {e.field for e in result.errors} == {"question_index", "level"}

    def test_control_characters_stripped(self):
        result = validate_input(RatingInput, {"question_index": 0, "notes": "ok\x00\x07\tfine"})
        assert result.data["notes"] == "ok\tfine"

    def test_attachment_name_loses_directories(self):
        result = validate_input(
            AttachmentInput, {"question_index": 0, "file_name": "..\\..\\etc/passwd.txt"}
        )
        assert result.data["file_name"] == "passwd.txt"

        assert not validate_input(AttachmentInput, {"question_index": 0, "file_name": "dir/.."}).success

    def test_tags_input_dedupes(self):
        assert TagsInput(tags=["a", " a ", "", "b"]).tags == ["a", "b"]


class TestDocumentValidation:
    def minimal(self, **overrides):
        doc = {
            "formatVersion": "1.0",
            "exportedAt": "2026-03-01T12:00:00Z",
            "scope": "full",
            "data": {
                "assessments": [
                    {
                        "id": "a1",
                        "itemCode": CASE_ITEM,
                        "status": "finalized",
                        "createdAt": "2026-02-01T09:00:00Z",
                        "updatedAt": "2026-02-02T09:00:00.250000Z",
                        "finalizedAt": "2026-02-02T09:00:00.250000Z",
                        "score": 3.5,
                    }
                ],
                "ratings": [
                    {
                        "id": "r1",
                        "assessmentId": "a1",
                        "questionIndex": 0,
                        "level": 3,
                        "updatedAt": "2026-02-02T09:00:00Z",
                    }
                ],
            },
            "metadata": {"totalAssessments": 1},
        }
        doc.update(overrides)
        return doc

    def test_accepts_minimal_document(self):
        outcome = validate_document(self.minimal())

        assert outcome.ok
        assessment = outcome.document.data.assessments[0]
        assert assessment.updated_at == datetime(2026, 2, 2, 9, 0, 0, 250000)
        assert assessment.updated_at.tzinfo is None

    def test_accepts_json_text(self):
        assert validate_document(json.dumps(self.minimal())).ok

    def test_rejects_unsupported_version(self):
        outcome = validate_document(self.minimal(formatVersion="2.0"))
        assert not outcome.ok
        assert outcome.errors[0].startswith("formatVersion:")

    def test_custom_supported_versions(self):
        assert validate_document(self.minimal(formatVersion="2.0"), ["1.0", "2.0"]).ok

    def test_rejects_unknown_scope_and_bad_status(self):
        doc = self.minimal(scope="everything")
        doc["data"]["assessments"][0]["status"] = "archived"

        outcome = validate_document(doc)

        assert not outcome.ok
        assert len(outcome.errors) == 2

    def test_rejects_non_object(self):
        assert not validate_document([1, 2, 3]).ok

    def test_offset_timestamps_become_utc(self):
        aware = datetime(2026, 2, 2, 11, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_naive_utc(aware) == datetime(2026, 2, 2, 9, 0)
        assert iso_z(aware) == "2026-02-02T09:00:00Z"


class TestImportResult:
    def test_counts_follow_actions(self):
        result = ImportResult()
        for action in ("imported_current", "imported_history", "skipped", "skipped", "error"):
            result.record(ImportItemResult(CASE_ITEM, "Establish Case", action))

        assert (result.imported_as_current, result.imported_as_history, result.skipped) == (1, 1, 2)
        assert result.success

    def test_errors_fail_the_run(self):
        result = ImportResult.rejected("Invalid JSON format")
        assert not result.success
        assert result.to_dict()["errors"] == ["Invalid JSON format"]

    def test_cancellation_token(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled


class TestScoringService:
    def test_item_scores(self, ledger, catalog):
        finalize_with(ledger, CASE_ITEM, [2, 4, 3])
        draft = ledger.lifecycle.start(CASE_ITEM)
        ledger.lifecycle.save_rating(draft.id, 0, 5)

        with ledger.uow.read() as s:
            rows = {r.item_code: r for r in ScoringService(s, catalog).item_scores()}

        assert set(rows) == {CASE_ITEM, MANAGE_ITEM, CLAIMS_ITEM}
        assert rows[CASE_ITEM].state == "in_progress"
        assert rows[CASE_ITEM].score == 3.0
        assert rows[CASE_ITEM].progress == 33
        assert rows[MANAGE_ITEM].state == "absent"
        assert rows[MANAGE_ITEM].score is None

    def test_filter_by_grouping_key(self, ledger, catalog):
        with ledger.uow.read() as s:
            rows = ScoringService(s, catalog).item_scores("Financial Management")
        assert [r.item_code for r in rows] == [CLAIMS_ITEM]

    def test_grouping_averages(self, ledger, catalog):
        finalize_with(ledger, CASE_ITEM, [4])
        finalize_with(ledger, MANAGE_ITEM, [2])

        with ledger.uow.read() as s:
            averages = {a.grouping_key: a for a in ScoringService(s, catalog).grouping_averages()}

        assert averages["Case Management"].average == 3.0
        assert averages["Case Management"].coverage == 1.0
        assert math.isnan(averages["Financial Management"].average)
        assert averages["Financial Management"].coverage == 0.0
