from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional, Sequence

import psycopg

from .backfill import BackfillSettings, TableBackfill
from .config import BackfillConfig, BackfillTarget, load_env
from .embed import OpenAIEmbedder
from .errors import ConfigError, StorageError
from .log import get_logger
from .progress import ProgressStore
from .verify import build_report, verify_target, write_report
from .write import DBConfig, PostgresTableStore, get_conn

logger = get_logger("latticefill.cli")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="latticefill",
        description="Backfill embeddings for rows that are missing vectors",
    )
    p.add_argument("--table", default=None, help="Restrict the operation to one configured target")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument(
        "--reset-progress",
        action="store_true",
        help="Clear saved progress for --table, or for every target",
    )
    mode.add_argument(
        "--reset-failed",
        action="store_true",
        help="Forget failed rows of --table so the next run retries them",
    )
    mode.add_argument(
        "--verify",
        action="store_true",
        help="Report embedding coverage and dimensions instead of backfilling",
    )
    p.add_argument("--report", type=Path, default=None, help="Write the --verify report as JSON")
    return p


def _select_targets(cfg: BackfillConfig, table: Optional[str]) -> List[BackfillTarget]:
    if table is None:
        return list(cfg.targets)
    target = cfg.target(table)
    if target is None:
        known = ", ".join(t.name for t in cfg.targets)
        raise ConfigError([f"unknown table {table!r} (configured: {known})"])
    return [target]


def _targets_exist(db: PostgresTableStore, targets: List[BackfillTarget]) -> bool:
    """Check every target's table and columns before any row work.

    A mistyped table or column would otherwise stall the page fetch forever.
    """
    ok = True
    for t in targets:
        try:
            missing = db.missing_columns(t)
        except StorageError as e:
            logger.error(f"Could not inspect table {t.table} for target {t.name}: {e}")
            return False
        if missing:
            logger.error(
                f"Configuration error: target {t.name} needs columns missing from "
                f"{t.table}: {', '.join(missing)}"
            )
            ok = False
    return ok


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.report is not None and not args.verify:
        parser.error("--report requires --verify")

    try:
        cfg = BackfillConfig.from_env()
        targets = _select_targets(cfg, args.table)
    except ConfigError as e:
        for problem in e.problems:
            logger.error(f"Configuration error: {problem}")
        return 1

    progress = ProgressStore(
        cfg.progress_file,
        snapshots={t.name: cfg.snapshot_for(t) for t in cfg.targets},
    )
    progress.load()

    if args.reset_failed:
        if args.table is None:
            logger.error("--reset-failed requires --table=<name>")
            return 1
        progress.reset_failed(args.table)
        return 0
    if args.reset_progress:
        progress.reset(args.table)
        return 0

    try:
        cfg.validate()
    except ConfigError as e:
        for problem in e.problems:
            logger.error(f"Configuration error: {problem}")
        return 1

    logger.info(
        f"Embedding model {cfg.embedding_model} (dim={cfg.target_dimension}); "
        f"targets: {', '.join(t.name for t in targets)}"
    )
    db_cfg = DBConfig(url=cfg.db_url, password=cfg.db_password)
    db = PostgresTableStore(lambda: get_conn(db_cfg))
    try:
        db.open()
    except psycopg.Error as e:
        logger.error(f"Could not connect to the database: {e}")
        return 1

    try:
        if not _targets_exist(db, targets):
            return 1
        if args.verify:
            reports = [verify_target(db, t, cfg.target_dimension) for t in targets]
            report = build_report(reports, cfg.target_dimension)
            for issue in report["issues"]:
                logger.warning(f"Issue: {issue}")
            for rec in report["recommendations"]:
                logger.info(f"Recommendation: {rec}")
            if args.report is not None:
                write_report(report, args.report)
            return 0

        embedder = OpenAIEmbedder(
            api_key=cfg.openai_api_key,
            model=cfg.embedding_model,
            base_url=cfg.openai_base_url,
            timeout=cfg.timeout_seconds,
        )
        driver = TableBackfill(db, embedder, progress, BackfillSettings.from_config(cfg))
        for target in targets:
            driver.run(target)
    finally:
        db.close()

    logger.info("Embedding backfill completed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
