"""
analytics_core.embeddings — Bedrock Titan text embeddings.

Embedding is the slowest and least reliable step of the import pipeline, so
generate computes every vector up front and the load stage never calls
Bedrock.  Oversized input is truncated, never rejected.
"""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import boto3
from aws_lambda_powertools import Logger

from analytics_core.models import EMBEDDING_DIMENSIONS, MAX_EMBED_INPUT_CHARS

logger = Logger(service="analytics-core")

DEFAULT_MODEL_ID = "amazon.titan-embed-text-v2:0"
DEFAULT_CONCURRENCY = 4


class TitanEmbedder:
    """Calls bedrock-runtime InvokeModel for a Titan embedding model."""

    def __init__(
        self,
        *,
        bedrock_client: Any = None,
        model_id: str = DEFAULT_MODEL_ID,
        dimensions: int = EMBEDDING_DIMENSIONS,
        max_input_chars: int = MAX_EMBED_INPUT_CHARS,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        region = os.environ.get("BEDROCK_REGION") or os.environ.get("AWS_REGION", "eu-west-2")
        self._bedrock: Any = bedrock_client or boto3.client("bedrock-runtime", region_name=region)
        self._model_id = model_id
        self._dimensions = dimensions
        self._max_input_chars = max_input_chars
        self._concurrency = max(1, concurrency)

    def embed(self, text: str) -> list[float]:
        response = self._bedrock.invoke_model(
            modelId=self._model_id,
            contentType="application/json",
            accept="application/json",
            body=json.dumps(
                {"inputText": text[: self._max_input_chars], "dimensions": self._dimensions}
            ),
        )
        body = response["body"]
        raw = body.read() if hasattr(body, "read") else body
        result = json.loads(raw)
        return [float(v) for v in result["embedding"]]

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed every text, at most ``concurrency`` requests in flight.

        Results keep input order.  The first failure propagates.
        """
        if self._concurrency == 1 or len(texts) <= 1:
            return [self.embed(text) for text in texts]
        with ThreadPoolExecutor(max_workers=self._concurrency) as pool:
            return list(pool.map(self.embed, texts))
