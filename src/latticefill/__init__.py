__all__ = [
    "BackfillConfig",
    "BackfillTarget",
    "OpenAIEmbedder",
    "ProgressStore",
    "TableBackfill",
    "with_retries",
]

from .backfill import TableBackfill
from .config import BackfillConfig, BackfillTarget
from .embed import OpenAIEmbedder
from .progress import ProgressStore
from .retry import with_retries
