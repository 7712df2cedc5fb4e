from __future__ import annotations

import json
import threading
from typing import List, Optional

import requests

from .errors import EmbeddingAPIError, EmbeddingDimensionError
from .log import get_logger

logger = get_logger("latticefill.embed")


class OpenAIEmbedder:
    """Single-text embedding client for an OpenAI-compatible `/embeddings` API.

    Retries are not handled here; see `latticefill.retry.with_retries`.
    Unless a session is injected, each calling thread gets its own
    `requests.Session`.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        sess = getattr(self._local, "session", None)
        if sess is None:
            sess = requests.Session()
            self._local.session = sess
        return sess

    def embed(self, text: str, target_dimension: int) -> List[float]:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        url = f"{self.base_url}/embeddings"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "input": text,
            "dimensions": target_dimension,
        }
        logger.debug(
            f"Requesting embedding (model={self.model}, dim={target_dimension}, len={len(text)} chars)"
        )
        try:
            resp = self.session.post(
                url,
                headers=headers,
                data=json.dumps(payload),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise EmbeddingAPIError(f"Embedding request failed: {e}") from e

        if resp.status_code != 200:
            raise EmbeddingAPIError(_error_message(resp), status=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise EmbeddingAPIError(
                f"Embedding response was not JSON: {resp.text[:120]}",
                status=resp.status_code,
            ) from e

        values = _first_embedding(data)
        if not values:
            logger.warning("Embedding response contained no values")
            return []
        try:
            vec = [float(v) for v in values]
        except (TypeError, ValueError) as e:
            raise EmbeddingAPIError(
                f"Embedding response contained non-numeric values: {e}",
                rate_limited=False,
            ) from e
        if len(vec) != target_dimension:
            raise EmbeddingDimensionError(target_dimension, len(vec))
        return vec


def _first_embedding(data: object) -> list:
    """Pull `data[0].embedding` out of an OpenAI-style body.

    A missing or empty `data` list means no values came back. Any other
    shape is a provider error.
    """
    if not isinstance(data, dict):
        raise EmbeddingAPIError(
            f"Embedding response was not an object: {type(data).__name__}",
            rate_limited=False,
        )
    items = data.get("data")
    if not items:
        return []
    if not isinstance(items, list) or not isinstance(items[0], dict):
        raise EmbeddingAPIError(
            "Embedding response has an unexpected shape: 'data' is not a list of objects",
            rate_limited=False,
        )
    values = items[0].get("embedding")
    if values is None:
        return []
    if not isinstance(values, list):
        raise EmbeddingAPIError(
            f"Embedding response has an unexpected shape: embedding is {type(values).__name__}",
            rate_limited=False,
        )
    return values


def _error_message(resp: requests.Response) -> str:
    # OpenAI-style bodies: {"error": {"message": "...", "type": "..."}}
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or f"HTTP {resp.status_code}"
    err = body.get("error") if isinstance(body, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    if isinstance(err, str):
        return err
    return resp.text[:200] or f"HTTP {resp.status_code}"
