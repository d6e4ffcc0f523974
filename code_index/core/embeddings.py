"""
Embedding providers.

An embedder turns text into a fixed-length vector and reports the
provider/model/dimension triple that identifies which index its vectors may
be stored in.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from sentence_transformers import SentenceTransformer
from openai import OpenAI


class EmbeddingError(RuntimeError):
    """The provider failed or returned an unusable vector."""


# Known dimensionality of OpenAI embedding models.
OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
DEFAULT_OPENAI_DIMENSIONS = 1536


class Embedder:
    """Base class; subclasses implement ``_embed``."""

    provider: str = ""
    model: str = ""

    @property
    def dimensions(self) -> int:
        raise NotImplementedError

    def _embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def embed(self, text: str) -> List[float]:
        vector = self._embed(text)
        if vector is None or len(vector) == 0:
            raise EmbeddingError(f"{self.provider}/{self.model} returned an empty embedding")
        return list(vector)


class SentenceTransformerEmbedder(Embedder):
    provider = "sentence-transformers"

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model = model_name
        logging.info(f"Loading SentenceTransformer model {model_name}")
        self._model = SentenceTransformer(model_name)
        self._dimensions = int(self._model.get_sentence_embedding_dimension())
        logging.info(f"   Using embedding model: {model_name} ({self._dimensions} dimensions)")

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _embed(self, text: str) -> List[float]:
        return self._model.encode(text).tolist()


class OpenAIEmbedder(Embedder):
    provider = "openai"

    def __init__(self, model_name: str = "text-embedding-3-small", llm_config: Optional[Dict[str, Any]] = None):
        config = llm_config or {}
        self.model = model_name
        api_key = os.environ.get(config.get("api_key_env_var", "OPENAI_API_KEY"))
        base_url = os.environ.get("OPENAI_BASE_URL", config.get("base_url"))
        if not api_key:
            raise EmbeddingError("No API key found for OpenAIEmbedder")
        self._client = OpenAI(api_key=api_key, base_url=base_url)
        self._dimensions = OPENAI_MODEL_DIMENSIONS.get(model_name, DEFAULT_OPENAI_DIMENSIONS)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _embed(self, text: str) -> List[float]:
        response = self._client.embeddings.create(model=self.model, input=text)
        if not response.data:
            return []
        return response.data[0].embedding


def create_embedder(provider: str, model: str, llm_config: Optional[Dict[str, Any]] = None) -> Embedder:
    if provider == SentenceTransformerEmbedder.provider:
        return SentenceTransformerEmbedder(model)
    if provider == OpenAIEmbedder.provider:
        return OpenAIEmbedder(model, llm_config)
    raise ValueError(f"Unsupported embedding provider: {provider}")
