"""
Tests for the JSON progress store.
"""

import json
import logging

import pytest

from latticefill.progress import ProgressStore

SNAPSHOT = {
    "embeddingModel": "text-embedding-3-small",
    "targetDimension": 1536,
    "sourceFields": ["name", "summary"],
    "embeddingColumn": "embedding",
}


@pytest.fixture
def store(progress_path):
    s = ProgressStore(progress_path, snapshots={"mental_models": SNAPSHOT})
    s.load()
    return s


def _on_disk(path):
    return json.loads(path.read_text(encoding="utf-8"))


class TestLoad:

    def test_missing_file_starts_empty(self, store):
        assert store.records == {}

    def test_corrupt_file_starts_empty_with_warning(self, progress_path, caplog):
        progress_path.write_text("{not json", encoding="utf-8")
        s = ProgressStore(progress_path)
        with caplog.at_level(logging.WARNING, logger="latticefill.progress"):
            s.load()
        assert s.records == {}
        assert "starting fresh" in caplog.text

    def test_non_object_file_starts_empty(self, progress_path):
        progress_path.write_text("[1, 2, 3]", encoding="utf-8")
        s = ProgressStore(progress_path)
        s.load()
        assert s.records == {}

    def test_round_trip(self, store, progress_path):
        store.mark_processed("mental_models", 1, 1)
        store.mark_failed("mental_models", "abc", "no text content", 0)

        reloaded = ProgressStore(progress_path, snapshots={"mental_models": SNAPSHOT})
        reloaded.load()
        rec = reloaded.get_or_init("mental_models")
        assert rec.processed_ids == [1]
        assert rec.failed_ids[0].id == "abc"
        assert rec.failed_ids[0].error == "no text content"
        assert rec.config_snapshot == SNAPSHOT


class TestFileFormat:

    def test_persisted_keys(self, store, progress_path):
        store.mark_processed("mental_models", 7, 3)
        data = _on_disk(progress_path)["mental_models"]
        assert data["lastSuccessfullyProcessedOffset"] == 3
        assert data["processedRecordIds"] == [7]
        assert data["failedRecordIds"] == []
        assert data["lastRanAt"]
        assert data["configUsedSnapshot"] == SNAPSHOT

    def test_every_mutation_is_persisted(self, store, progress_path):
        store.mark_failed("mental_models", 2, "boom", 4)
        assert _on_disk(progress_path)["mental_models"]["failedRecordIds"] == [
            {"id": 2, "error": "boom", "attempts": 4}
        ]


class TestMarking:

    def test_mark_processed_is_idempotent(self, store):
        store.mark_processed("mental_models", 1, 1)
        store.mark_processed("mental_models", 1, 2)
        rec = store.get_or_init("mental_models")
        assert rec.processed_ids.count(1) == 1
        assert rec.last_successfully_processed_offset == 2

    def test_offset_never_moves_back(self, store, progress_path):
        store.mark_processed("mental_models", 40, 40)
        store.mark_processed("mental_models", 41, 1)
        assert store.get_or_init("mental_models").last_successfully_processed_offset == 40
        data = json.loads(progress_path.read_text(encoding="utf-8"))
        assert data["mental_models"]["lastSuccessfullyProcessedOffset"] == 40

    def test_mark_failed_upserts(self, store):
        store.mark_failed("mental_models", 5, "first", 1)
        store.mark_failed("mental_models", 5, "second", 3)
        failed = store.get_or_init("mental_models").failed_ids
        assert len(failed) == 1
        assert (failed[0].error, failed[0].attempts) == ("second", 3)

    def test_processed_removes_from_failed(self, store):
        store.mark_failed("mental_models", 5, "boom", 1)
        store.mark_processed("mental_models", 5, 1)
        assert not store.is_failed("mental_models", 5)
        assert store.is_processed("mental_models", 5)

    def test_failed_and_processed_never_overlap(self, store):
        ops = [
            ("p", 1), ("f", 1), ("p", 2), ("f", 3), ("p", 3),
            ("f", 2), ("f", 2), ("p", 1), ("p", 4), ("f", 4),
        ]
        for kind, row_id in ops:
            if kind == "p":
                store.mark_processed("mental_models", row_id, row_id)
            else:
                store.mark_failed("mental_models", row_id, "err", 1)
            rec = store.get_or_init("mental_models")
            failed = {f.id for f in rec.failed_ids}
            assert not failed & set(rec.processed_ids)

    def test_int_and_str_ids_are_distinct(self, store):
        store.mark_processed("mental_models", 1, 1)
        assert not store.is_processed("mental_models", "1")


class TestReset:

    def test_reset_failed_keeps_processed(self, store, progress_path):
        store.mark_processed("mental_models", 1, 1)
        store.mark_processed("mental_models", 2, 2)
        store.mark_failed("mental_models", 3, "boom", 4)
        store.reset_failed("mental_models")
        rec = store.get_or_init("mental_models")
        assert rec.failed_ids == []
        assert rec.processed_ids == [1, 2]
        assert _on_disk(progress_path)["mental_models"]["failedRecordIds"] == []

    def test_reset_one_target(self, store):
        store.mark_processed("mental_models", 1, 1)
        store.mark_processed("cognitive_biases", 9, 1)
        store.reset("mental_models")
        assert store.get_or_init("mental_models").processed_ids == []
        assert store.get_or_init("mental_models").config_snapshot == SNAPSHOT
        assert store.get_or_init("cognitive_biases").processed_ids == [9]

    def test_reset_all_backs_up_file(self, store, progress_path):
        store.mark_processed("mental_models", 1, 1)
        store.reset()
        assert store.records == {}
        assert _on_disk(progress_path) == {}
        backups = list(progress_path.parent.glob("progress.json.backup.*"))
        assert len(backups) == 1
        assert _on_disk(backups[0])["mental_models"]["processedRecordIds"] == [1]


class TestSnapshot:

    def test_mismatch_warns(self, progress_path, caplog):
        old = ProgressStore(progress_path, snapshots={"mental_models": SNAPSHOT})
        old.load()
        old.mark_processed("mental_models", 1, 1)

        changed = dict(SNAPSHOT, targetDimension=768)
        s = ProgressStore(progress_path, snapshots={"mental_models": changed})
        s.load()
        with caplog.at_level(logging.WARNING, logger="latticefill.progress"):
            rec = s.get_or_init("mental_models")
        assert "different configuration" in caplog.text
        # kept until the operator resets
        assert rec.config_snapshot == SNAPSHOT
        s.reset("mental_models")
        assert s.get_or_init("mental_models").config_snapshot == changed
