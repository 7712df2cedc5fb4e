from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure local 'src' is importable when running as a script
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from latticefill.cli import main as backfill_main  # noqa: E402
from latticefill.log import get_logger  # noqa: E402

logger = get_logger("latticefill.reset")


def main() -> int:
    p = argparse.ArgumentParser(
        description="Start the embedding backfill fresh after embedding columns were recreated"
    )
    p.add_argument("--table", default=None, help="Only reset this target")
    p.add_argument(
        "--failed-only",
        action="store_true",
        help="Keep successes and only forget failed rows (requires --table)",
    )
    args = p.parse_args()

    argv = ["--reset-failed" if args.failed_only else "--reset-progress"]
    if args.table:
        argv.append(f"--table={args.table}")
    rc = backfill_main(argv)
    if rc == 0 and not args.failed_only:
        logger.info("Progress reset complete; the next backfill run starts fresh")
    return rc


if __name__ == "__main__":
    raise SystemExit(main())
