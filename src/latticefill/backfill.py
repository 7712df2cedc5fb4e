from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .config import BackfillConfig, BackfillTarget
from .errors import EmbeddingDimensionError, StorageError
from .log import get_logger
from .progress import ProgressStore, RowId
from .retry import with_retries
from .write import SourceRow

logger = get_logger("latticefill.backfill")

NO_TEXT_CONTENT = "no text content"
RETRIES_EXHAUSTED = "embedding generation failed after retries"


class RowStore(Protocol):
    def fetch_pending_page(
        self, target: BackfillTarget, after_id: Optional[RowId], limit: int
    ) -> List[SourceRow]: ...

    def write_embedding(self, target: BackfillTarget, row_id: RowId, vector: List[float]) -> None: ...


class Embedder(Protocol):
    def embed(self, text: str, target_dimension: int) -> List[float]: ...


@dataclass
class BackfillSettings:
    target_dimension: int = 1536
    page_size: int = 50
    request_delay_ms: int = 250
    max_retries: int = 3
    base_retry_delay_ms: int = 1000
    fetch_retry_delay_ms: int = 5000
    page_concurrency: int = 1

    @classmethod
    def from_config(cls, cfg: BackfillConfig) -> "BackfillSettings":
        return cls(
            target_dimension=cfg.target_dimension,
            page_size=cfg.page_size,
            request_delay_ms=cfg.request_delay_ms,
            max_retries=cfg.max_retries,
            base_retry_delay_ms=cfg.base_retry_delay_ms,
            fetch_retry_delay_ms=cfg.fetch_retry_delay_ms,
            page_concurrency=cfg.page_concurrency,
        )


@dataclass
class BackfillStats:
    target: str
    fetched: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class EmbedOutcome:
    vector: Optional[List[float]]
    attempts: int
    error: Optional[str] = None


def build_prompt(target: BackfillTarget, row: SourceRow) -> str:
    parts = []
    for f in target.text_fields:
        value = row.texts.get(f.column)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        parts.append(f"{f.label}: {value}" if f.label else value)
    return "\n".join(parts).strip()


class TableBackfill:
    """Pages through one target's un-embedded rows and fills them in.

    Row failures are recorded in the progress store and never stop the run;
    a failing page fetch is retried after `fetch_retry_delay_ms`.
    """

    def __init__(
        self,
        db: RowStore,
        embedder: Embedder,
        progress: ProgressStore,
        settings: BackfillSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.embedder = embedder
        self.progress = progress
        self.settings = settings
        self.sleep = sleep

    def run(self, target: BackfillTarget) -> BackfillStats:
        logger.info(f"--- Processing table: {target.table} (target={target.name}) ---")
        self.progress.get_or_init(target.name)
        stats = BackfillStats(target=target.name)
        after_id: Optional[RowId] = None
        offset = 0
        page_no = 0

        while True:
            page = self._fetch_page(target, after_id)
            if not page:
                logger.info(f"{target.name}: no more rows to embed")
                break
            page_no += 1
            stats.fetched += len(page)
            logger.info(f"{target.name}: page {page_no} with {len(page)} row(s)")

            if self.settings.page_concurrency > 1:
                self._process_page_concurrently(target, page, offset, stats)
            else:
                for i, row in enumerate(page):
                    if self._process_row(target, row, offset + i + 1, stats):
                        self._delay()
            offset += len(page)
            after_id = page[-1].id

            if len(page) < self.settings.page_size:
                break

        logger.info(
            f"{target.name}: done (fetched={stats.fetched}, processed={stats.processed}, "
            f"failed={stats.failed}, skipped={stats.skipped})"
        )
        return stats

    def _fetch_page(self, target: BackfillTarget, after_id: Optional[RowId]) -> List[SourceRow]:
        while True:
            try:
                return self.db.fetch_pending_page(target, after_id, self.settings.page_size)
            except StorageError as e:
                logger.error(
                    f"{target.name}: fetch failed after id={after_id}: {e}; "
                    f"retrying in {self.settings.fetch_retry_delay_ms}ms"
                )
                self.sleep(self.settings.fetch_retry_delay_ms / 1000.0)

    def _should_skip(self, target: BackfillTarget, row: SourceRow) -> bool:
        if self.progress.is_processed(target.name, row.id):
            logger.info(f"{target.name}: id={row.id} already processed, skipping")
            return True
        if self.progress.is_failed(target.name, row.id):
            logger.info(f"{target.name}: id={row.id} previously failed, skipping")
            return True
        return False

    def _process_row(
        self, target: BackfillTarget, row: SourceRow, offset: int, stats: BackfillStats
    ) -> bool:
        """Handle one row; returns True when the embedding API was called."""
        if self._should_skip(target, row):
            stats.skipped += 1
            return False
        text = build_prompt(target, row)
        if not text:
            self._fail(target, row.id, NO_TEXT_CONTENT, 0, stats)
            return False
        outcome = self._embed(text)
        self._settle(target, row.id, outcome, offset, stats)
        return True

    def _process_page_concurrently(
        self, target: BackfillTarget, page: List[SourceRow], offset: int, stats: BackfillStats
    ) -> None:
        pending: List[Tuple[int, SourceRow, str]] = []
        for i, row in enumerate(page):
            if self._should_skip(target, row):
                stats.skipped += 1
                continue
            pending.append((offset + i + 1, row, build_prompt(target, row)))
        if not pending:
            return

        outcomes: Dict[int, EmbedOutcome] = {}
        futures = {}
        with ThreadPoolExecutor(max_workers=self.settings.page_concurrency) as pool:
            for idx, (_, _, text) in enumerate(pending):
                if text:
                    futures[idx] = pool.submit(self._embed, text)
                else:
                    outcomes[idx] = EmbedOutcome(vector=None, attempts=0, error=NO_TEXT_CONTENT)
            for idx, fut in futures.items():
                try:
                    outcomes[idx] = fut.result()
                except Exception as e:
                    outcomes[idx] = EmbedOutcome(vector=None, attempts=1, error=str(e))

        # progress only moves once the whole page has settled, in page order
        for idx, (row_offset, row, _) in enumerate(pending):
            self._settle(target, row.id, outcomes[idx], row_offset, stats)
        if futures:
            self._delay()

    def _embed(self, text: str) -> EmbedOutcome:
        attempts = 0

        def attempt() -> List[float]:
            nonlocal attempts
            attempts += 1
            return self.embedder.embed(text, self.settings.target_dimension)

        try:
            vector = with_retries(
                attempt,
                self.settings.max_retries,
                self.settings.base_retry_delay_ms,
                sleep=self.sleep,
            )
        except EmbeddingDimensionError as e:
            return EmbedOutcome(vector=None, attempts=attempts, error=str(e))
        if vector is None:
            return EmbedOutcome(vector=None, attempts=attempts, error=RETRIES_EXHAUSTED)
        return EmbedOutcome(vector=vector, attempts=attempts)

    def _settle(
        self,
        target: BackfillTarget,
        row_id: RowId,
        outcome: EmbedOutcome,
        offset: int,
        stats: BackfillStats,
    ) -> None:
        if outcome.vector is None:
            self._fail(target, row_id, outcome.error or RETRIES_EXHAUSTED, outcome.attempts, stats)
            return
        try:
            self.db.write_embedding(target, row_id, outcome.vector)
        except StorageError as e:
            self._fail(target, row_id, f"write failed: {e}", outcome.attempts, stats)
            return
        self.progress.mark_processed(target.name, row_id, offset)
        stats.processed += 1
        logger.info(f"{target.name}: id={row_id} embedded ({len(outcome.vector)} dims)")

    def _fail(
        self,
        target: BackfillTarget,
        row_id: RowId,
        reason: str,
        attempts: int,
        stats: BackfillStats,
    ) -> None:
        logger.warning(f"{target.name}: id={row_id} failed after {attempts} attempt(s): {reason}")
        self.progress.mark_failed(target.name, row_id, reason, attempts)
        stats.failed += 1

    def _delay(self) -> None:
        if self.settings.request_delay_ms > 0:
            self.sleep(self.settings.request_delay_ms / 1000.0)
