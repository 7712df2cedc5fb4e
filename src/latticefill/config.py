from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError
from .log import get_logger

logger = get_logger("latticefill.config")


@dataclass(frozen=True)
class TextField:
    column: str
    label: Optional[str] = None


@dataclass(frozen=True)
class BackfillTarget:
    """One table whose rows get an embedding written into `embedding_column`."""

    name: str
    table: str
    text_fields: Tuple[TextField, ...]
    id_column: str = "id"
    embedding_column: str = "embedding"

    @property
    def source_fields(self) -> list[str]:
        return [f.column for f in self.text_fields]


_DEFAULT_FIELDS = (
    TextField("name", "Tool Name"),
    TextField("category", "Category"),
    TextField("summary", "Summary"),
)

DEFAULT_TARGETS: Tuple[BackfillTarget, ...] = (
    BackfillTarget(name="mental_models", table="mental_models", text_fields=_DEFAULT_FIELDS),
    BackfillTarget(name="cognitive_biases", table="cognitive_biases", text_fields=_DEFAULT_FIELDS),
)


@dataclass
class BackfillConfig:
    openai_api_key: str = ""
    db_password: str = ""
    embedding_model: str = "text-embedding-3-small"
    openai_base_url: str = "https://api.openai.com/v1"
    db_url: str = "postgresql://postgres@localhost:54322/postgres"
    target_dimension: int = 1536
    request_delay_ms: int = 250
    max_retries: int = 3
    base_retry_delay_ms: int = 1000
    page_size: int = 50
    fetch_retry_delay_ms: int = 5000
    page_concurrency: int = 1
    timeout_seconds: int = 30
    progress_file: Path = Path("./db_embedding_progress.json")
    targets: Tuple[BackfillTarget, ...] = field(default_factory=lambda: DEFAULT_TARGETS)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BackfillConfig":
        env = os.environ if environ is None else environ
        problems: list[str] = []

        def _int(key: str, default: int) -> int:
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                return default
            try:
                return int(raw)
            except ValueError:
                problems.append(f"{key} must be an integer, got {raw!r}")
                return default

        targets = DEFAULT_TARGETS
        raw_targets = env.get("BACKFILL_TARGETS", "").strip()
        if raw_targets:
            try:
                targets = parse_targets(raw_targets)
            except ValueError as e:
                problems.append(f"BACKFILL_TARGETS is invalid: {e}")

        cfg = cls(
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            db_password=env.get("SUPABASE_SERVICE_KEY", ""),
            embedding_model=env.get("EMBEDDING_MODEL", cls.embedding_model),
            openai_base_url=env.get("OPENAI_BASE_URL", cls.openai_base_url),
            db_url=env.get("SUPABASE_DB_URL", cls.db_url),
            target_dimension=_int("EMBEDDING_DIMENSIONALITY", cls.target_dimension),
            request_delay_ms=_int("EMBED_REQUEST_DELAY_MS", cls.request_delay_ms),
            max_retries=_int("EMBED_MAX_RETRIES", cls.max_retries),
            base_retry_delay_ms=_int("EMBED_BASE_RETRY_DELAY_MS", cls.base_retry_delay_ms),
            page_size=_int("DB_PAGE_SIZE", cls.page_size),
            fetch_retry_delay_ms=_int("DB_FETCH_RETRY_DELAY_MS", cls.fetch_retry_delay_ms),
            page_concurrency=_int("EMBED_PAGE_CONCURRENCY", cls.page_concurrency),
            timeout_seconds=_int("EMBED_TIMEOUT_SECONDS", cls.timeout_seconds),
            progress_file=Path(env.get("PROGRESS_FILE_PATH", str(cls.progress_file))),
            targets=targets,
        )
        if problems:
            raise ConfigError(problems)
        return cfg

    def validate(self) -> None:
        """Raise ConfigError naming every problem that blocks a backfill run."""
        problems: list[str] = []
        if not self.openai_api_key:
            problems.append("OPENAI_API_KEY is not set")
        if not self.db_password:
            problems.append("SUPABASE_SERVICE_KEY is not set")
        if not self.db_url:
            problems.append("SUPABASE_DB_URL is empty")
        if self.target_dimension <= 0:
            problems.append("EMBEDDING_DIMENSIONALITY must be greater than 0")
        if not self.targets:
            problems.append("no backfill targets configured")
        if self.page_size <= 0:
            problems.append("DB_PAGE_SIZE must be greater than 0")
        if self.page_concurrency <= 0:
            problems.append("EMBED_PAGE_CONCURRENCY must be greater than 0")
        for key, value in (
            ("EMBED_MAX_RETRIES", self.max_retries),
            ("EMBED_REQUEST_DELAY_MS", self.request_delay_ms),
            ("EMBED_BASE_RETRY_DELAY_MS", self.base_retry_delay_ms),
            ("DB_FETCH_RETRY_DELAY_MS", self.fetch_retry_delay_ms),
        ):
            if value < 0:
                problems.append(f"{key} must not be negative")
        if problems:
            raise ConfigError(problems)

    def target(self, name: str) -> Optional[BackfillTarget]:
        for t in self.targets:
            if t.name == name:
                return t
        return None

    def snapshot_for(self, target: BackfillTarget) -> dict:
        return {
            "embeddingModel": self.embedding_model,
            "targetDimension": self.target_dimension,
            "sourceFields": target.source_fields,
            "embeddingColumn": target.embedding_column,
        }


def parse_targets(raw: str) -> Tuple[BackfillTarget, ...]:
    """Parse the BACKFILL_TARGETS JSON array into targets.

    Each entry is ``{"table": ..., "textFields": [...]}`` with optional
    ``name``, ``idColumn`` and ``embeddingColumn``. A text field is either a
    column name or ``{"column": ..., "label": ...}``.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"not valid JSON ({e.msg})") from e
    if not isinstance(data, list):
        raise ValueError("expected a JSON array of targets")

    out: list[BackfillTarget] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict) or not isinstance(item.get("table"), str):
            raise ValueError(f"target #{i} must be an object with a 'table' string")
        fields: list[TextField] = []
        for f in item.get("textFields") or []:
            if isinstance(f, str):
                fields.append(TextField(f))
            elif isinstance(f, dict) and isinstance(f.get("column"), str):
                fields.append(TextField(f["column"], f.get("label")))
            else:
                raise ValueError(f"target #{i} has an invalid text field: {f!r}")
        if not fields:
            raise ValueError(f"target #{i} has no textFields")
        out.append(
            BackfillTarget(
                name=item.get("name") or item["table"],
                table=item["table"],
                text_fields=tuple(fields),
                id_column=item.get("idColumn", "id"),
                embedding_column=item.get("embeddingColumn", "embedding"),
            )
        )
    return tuple(out)


def load_env() -> None:
    """
    Load environment variables from a .env file in the working directory or
    the project root if present. Existing environment values win.
    """
    root = Path(__file__).resolve().parents[2]
    for env_path in (Path.cwd() / ".env", root / ".env"):
        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=False)
            logger.debug(f"Loaded environment from {env_path}")
            break
