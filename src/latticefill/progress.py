from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from .log import get_logger

logger = get_logger("latticefill.progress")

RowId = Union[int, str]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FailedRecord:
    id: RowId
    error: str
    attempts: int


@dataclass
class ProgressRecord:
    last_successfully_processed_offset: int = 0
    processed_ids: List[RowId] = field(default_factory=list)
    failed_ids: List[FailedRecord] = field(default_factory=list)
    last_ran_at: Optional[str] = None
    config_snapshot: Optional[dict] = None

    def failed_entry(self, row_id: RowId) -> Optional[FailedRecord]:
        for rec in self.failed_ids:
            if rec.id == row_id:
                return rec
        return None

    def to_dict(self) -> dict:
        return {
            "lastSuccessfullyProcessedOffset": self.last_successfully_processed_offset,
            "processedRecordIds": list(self.processed_ids),
            "failedRecordIds": [
                {"id": r.id, "error": r.error, "attempts": r.attempts}
                for r in self.failed_ids
            ],
            "lastRanAt": self.last_ran_at,
            "configUsedSnapshot": self.config_snapshot,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressRecord":
        if not isinstance(data, dict):
            raise ValueError("progress record must be an object")
        failed = [
            FailedRecord(id=f["id"], error=str(f.get("error", "")), attempts=int(f.get("attempts", 0)))
            for f in data.get("failedRecordIds") or []
        ]
        return cls(
            last_successfully_processed_offset=int(data.get("lastSuccessfullyProcessedOffset", 0)),
            processed_ids=list(data.get("processedRecordIds") or []),
            failed_ids=failed,
            last_ran_at=data.get("lastRanAt"),
            config_snapshot=data.get("configUsedSnapshot"),
        )


class ProgressStore:
    """JSON-file checkpoint of per-target backfill progress.

    Every mutation rewrites the whole file before returning, so a killed run
    resumes from the last row it finished. One process per file.
    """

    def __init__(self, path: Union[str, Path], snapshots: Optional[Dict[str, dict]] = None) -> None:
        self.path = Path(path)
        self.snapshots: Dict[str, dict] = dict(snapshots or {})
        self.records: Dict[str, ProgressRecord] = {}
        self._warned: set[str] = set()

    def load(self) -> None:
        self.records = {}
        if not self.path.exists():
            logger.info(f"No progress file at {self.path}; starting fresh")
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read progress file {self.path} ({e}); starting fresh")
            return
        if not isinstance(data, dict):
            logger.warning(f"Progress file {self.path} is not a JSON object; starting fresh")
            return
        for name, raw in data.items():
            try:
                self.records[name] = ProgressRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping malformed progress record for {name}: {e}")
        logger.info(f"Loaded progress for {len(self.records)} target(s) from {self.path}")

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {name: rec.to_dict() for name, rec in self.records.items()}
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def _fresh(self, name: str) -> ProgressRecord:
        snapshot = self.snapshots.get(name)
        return ProgressRecord(config_snapshot=dict(snapshot) if snapshot is not None else None)

    def get_or_init(self, name: str) -> ProgressRecord:
        rec = self.records.get(name)
        if rec is None:
            rec = self._fresh(name)
            self.records[name] = rec
            return rec
        current = self.snapshots.get(name)
        if (
            current is not None
            and rec.config_snapshot != current
            and name not in self._warned
        ):
            logger.warning(
                f"Progress for {name} was recorded with a different configuration "
                f"({rec.config_snapshot}) than the current one ({current}). "
                f"Run with --reset-progress --table={name} to start over."
            )
            self._warned.add(name)
        return rec

    def is_processed(self, name: str, row_id: RowId) -> bool:
        return row_id in self.get_or_init(name).processed_ids

    def is_failed(self, name: str, row_id: RowId) -> bool:
        return self.get_or_init(name).failed_entry(row_id) is not None

    def mark_processed(self, name: str, row_id: RowId, offset: int) -> None:
        rec = self.get_or_init(name)
        if row_id not in rec.processed_ids:
            rec.processed_ids.append(row_id)
        rec.failed_ids = [f for f in rec.failed_ids if f.id != row_id]
        # a resumed scan restarts at 1; the recorded offset never moves back
        rec.last_successfully_processed_offset = max(rec.last_successfully_processed_offset, offset)
        rec.last_ran_at = _now()
        self.save()

    def mark_failed(self, name: str, row_id: RowId, error: str, attempts: int) -> None:
        rec = self.get_or_init(name)
        existing = rec.failed_entry(row_id)
        if existing is not None:
            existing.error = error
            existing.attempts = attempts
        else:
            rec.failed_ids.append(FailedRecord(id=row_id, error=error, attempts=attempts))
        if row_id in rec.processed_ids:
            rec.processed_ids.remove(row_id)
        rec.last_ran_at = _now()
        self.save()

    def reset(self, name: Optional[str] = None) -> None:
        if name is not None:
            logger.info(f"Resetting progress for {name}")
            self.records[name] = self._fresh(name)
            self._warned.discard(name)
        else:
            backup = self.backup()
            if backup is not None:
                logger.info(f"Backed up progress file to {backup}")
            logger.info("Resetting progress for all targets")
            self.records = {}
            self._warned.clear()
        self.save()

    def reset_failed(self, name: str) -> None:
        rec = self.get_or_init(name)
        logger.info(f"Clearing {len(rec.failed_ids)} failed id(s) for {name}")
        rec.failed_ids = []
        self.save()

    def backup(self) -> Optional[Path]:
        if not self.path.exists():
            return None
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        dest = self.path.with_name(f"{self.path.name}.backup.{stamp}")
        shutil.copyfile(self.path, dest)
        return dest
