"""Thin wrapper around the Gemini embedding API."""
from __future__ import annotations

import logging
from typing import Iterable

from google import genai

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


class Embedder:
    """Turns brief and profile text into fixed-dimension vectors.

    The client is created on first use so importing this module never needs
    credentials.
    """

    def __init__(self, settings: Settings | None = None, client: genai.Client | None = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def dim(self) -> int:
        return self.settings.embed_dim

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            if self.settings.use_vertex_ai:
                self._client = genai.Client(
                    vertexai=True,
                    project=self.settings.google_project,
                    location=self.settings.google_location,
                )
            else:
                self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    def embed_texts(self, texts: Iterable[str], task_type: str = "RETRIEVAL_DOCUMENT") -> list[list[float]]:
        texts = list(texts)
        if not texts:
            return []

        all_embeddings = []
        for i in range(0, len(texts), BATCH_SIZE):
            batch = texts[i : i + BATCH_SIZE]
            response = self.client.models.embed_content(
                model=self.settings.embed_model,
                contents=batch,
                config=genai.types.EmbedContentConfig(
                    output_dimensionality=self.settings.embed_dim,
                    task_type=task_type,
                ),
            )
            all_embeddings.extend([list(embedding.values) for embedding in response.embeddings])

        logger.debug(f"Embedded {len(texts)} texts with {self.settings.embed_model}")
        return all_embeddings

    def embed_query(self, text: str) -> list[float]:
        return self.embed_texts([text], task_type="RETRIEVAL_QUERY")[0]
