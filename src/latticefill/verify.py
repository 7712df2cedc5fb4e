from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from .config import BackfillTarget
from .log import get_logger
from .write import normalize_id

logger = get_logger("latticefill.verify")


class TableReader(Protocol):
    def fetch_all(self, target: BackfillTarget) -> List[dict]: ...


@dataclass
class TableReport:
    target: str
    table: str
    total: int = 0
    with_embeddings: int = 0
    without_embeddings: int = 0
    invalid: int = 0
    correct_dimension: int = 0
    wrong_dimension: int = 0
    empty_text: int = 0
    average_length: float = 0.0
    missing: List[dict] = field(default_factory=list)
    wrong_dimension_rows: List[dict] = field(default_factory=list)


def parse_embedding(value: object) -> Optional[List[float]]:
    """Return the vector for a stored embedding, or None if it is not one.

    Accepts lists and the text forms a vector column comes back as
    (pgvector `[1,2,3]` or a JSON array string).
    """
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, list) or not value:
        return None
    out: List[float] = []
    for v in value:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or math.isnan(v):
            return None
        out.append(float(v))
    return out


def _has_text(target: BackfillTarget, row: dict) -> bool:
    return any(
        isinstance(row.get(c), str) and row[c].strip() for c in target.source_fields
    )


def verify_target(db: TableReader, target: BackfillTarget, dimension: int) -> TableReport:
    rows = db.fetch_all(target)
    report = TableReport(target=target.name, table=target.table, total=len(rows))
    lengths: List[int] = []

    for row in rows:
        row_id = normalize_id(row.get(target.id_column))
        name = row.get("name")
        has_text = _has_text(target, row)
        if not has_text:
            report.empty_text += 1

        raw = row.get(target.embedding_column)
        if raw is None:
            report.without_embeddings += 1
            report.missing.append(
                {"id": row_id, "name": name, "reason": "No text content" if not has_text else "Missing embedding"}
            )
            continue
        vec = parse_embedding(raw)
        if vec is None:
            report.without_embeddings += 1
            report.invalid += 1
            report.missing.append({"id": row_id, "name": name, "reason": "Invalid embedding format"})
            continue

        report.with_embeddings += 1
        lengths.append(len(vec))
        if len(vec) == dimension:
            report.correct_dimension += 1
        else:
            report.wrong_dimension += 1
            report.wrong_dimension_rows.append({"id": row_id, "name": name, "actualDimension": len(vec)})

    if lengths:
        report.average_length = sum(lengths) / len(lengths)
    logger.info(
        f"{target.name}: {report.with_embeddings}/{report.total} with embeddings, "
        f"{report.wrong_dimension} wrong dimension, {report.invalid} invalid, "
        f"{report.empty_text} without text"
    )
    return report


def build_report(reports: Sequence[TableReport], dimension: int) -> dict:
    total = sum(r.total for r in reports)
    with_emb = sum(r.with_embeddings for r in reports)
    issues: List[str] = []
    recommendations: List[str] = []
    for r in reports:
        if r.without_embeddings:
            issues.append(f"{r.target}: {r.without_embeddings} records missing embeddings")
            recommendations.append(
                f"Re-run the backfill for {r.target} to process {r.without_embeddings} missing embeddings"
            )
        if r.wrong_dimension:
            issues.append(f"{r.target}: {r.wrong_dimension} records have wrong embedding dimensions")
            recommendations.append(
                f"Check the embedding model configuration for {r.target}; expected {dimension} dimensions"
            )
        if r.invalid:
            issues.append(f"{r.target}: {r.invalid} records have invalid embedding format")
        if r.empty_text:
            issues.append(f"{r.target}: {r.empty_text} records have no text content to embed")
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "expectedDimension": dimension,
        "tables": [asdict(r) for r in reports],
        "overall": {
            "totalTables": len(reports),
            "totalRecords": total,
            "totalWithEmbeddings": with_emb,
            "totalWithoutEmbeddings": total - with_emb,
            "successRate": (with_emb / total * 100.0) if total else 0.0,
        },
        "issues": issues,
        "recommendations": recommendations,
    }


def write_report(report: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report, indent=2), encoding="utf-8")
    logger.info(f"Verification report saved to {path}")
