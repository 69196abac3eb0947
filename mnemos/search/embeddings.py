"""
mnemos.search.embeddings — Pluggable text embedding backends.

Every backend exposes one coroutine, ``embed(text) -> list[float]``,
and raises ``EmbeddingUnavailable`` when it cannot produce a vector.
Callers treat that as "no vector for now" and fall back to text search.

Backends:
  - ``SentenceTransformerBackend``: local model, lazily loaded on first
    use.  The blocking load and encode run in a worker thread.
  - ``OllamaEmbeddingBackend``: ``POST /api/embeddings`` on an Ollama
    server via an ``httpx.AsyncClient``.
  - ``CallableBackend``: wraps any ``(text) -> list[float]`` function,
    sync or async.  Used by tests and embedding applications.

Default model: sentence-transformers/all-MiniLM-L6-v2
  - 384d embeddings, ~22M parameters, fast on CPU
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from mnemos.core.errors import EmbeddingUnavailable

log = logging.getLogger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384


class EmbeddingBackend:
    """Base class: subclasses implement ``embed``."""

    name: str = "base"
    dimension: Optional[int] = None

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# sentence-transformers
# ---------------------------------------------------------------------------


class SentenceTransformerBackend(EmbeddingBackend):
    """Lazy-loading sentence-transformers model.

    The model is downloaded from HuggingFace on first use.  Concurrent
    first calls share a single load.  A failed load is remembered so
    later calls fail fast instead of retrying the download.

    Parameters
    ----------
    model_name:
        HuggingFace model ID.
    device:
        Torch device ("cpu", "cuda", or "" for auto-detect).
    dimension:
        Expected embedding size, checked once the model is loaded.
    """

    name = "sentence-transformers"

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        device: str = "",
        dimension: Optional[int] = DEFAULT_DIMENSION,
    ) -> None:
        self._model_name = model_name
        self._device = device
        self.dimension = dimension
        self._model = None
        self._load_error: Optional[BaseException] = None
        self._load_task: Optional[asyncio.Task] = None
        self.load_count = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def _load_model(self) -> Any:
        """Blocking model load; runs in a worker thread."""
        from sentence_transformers import SentenceTransformer

        device = self._device
        if not device:
            try:
                import torch

                device = "cuda" if torch.cuda.is_available() else "cpu"
            except ImportError:
                device = "cpu"

        log.info("Loading embedding model: %s (device=%s)", self._model_name, device)
        model = SentenceTransformer(self._model_name, device=device)
        log.info(
            "Embedding model loaded: %dd embeddings",
            model.get_sentence_embedding_dimension(),
        )
        return model

    async def _load(self) -> Any:
        try:
            model = await asyncio.to_thread(self._load_model)
        except Exception as exc:
            log.warning("Failed to load embedding model %s: %s", self._model_name, exc)
            self._load_error = exc
            raise EmbeddingUnavailable(f"cannot load {self._model_name}", exc) from exc
        self._model = model
        return model

    async def _ensure_model(self) -> Any:
        if self._model is not None:
            return self._model
        if self._load_error is not None:
            raise EmbeddingUnavailable("model failed to load", self._load_error)
        if self._load_task is None:
            self.load_count += 1
            self._load_task = asyncio.create_task(self._load(), name="mnemos-model-load")
        # A caller that times out must not cancel the shared load.
        return await asyncio.shield(self._load_task)

    def _encode(self, model: Any, texts: List[str]) -> List[List[float]]:
        embeddings = model.encode(
            texts,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [emb.tolist() for emb in embeddings]

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        model = await self._ensure_model()
        try:
            return await asyncio.to_thread(self._encode, model, texts)
        except Exception as exc:
            log.warning("Embedding encode failed: %s", exc)
            raise EmbeddingUnavailable("encode failed", exc) from exc

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_many([text]))[0]


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


class OllamaEmbeddingBackend(EmbeddingBackend):
    """Embeddings from an Ollama server's ``/api/embeddings`` endpoint."""

    name = "ollama"

    def __init__(
        self,
        model_name: str,
        base_url: str = "http://localhost:11434",
        dimension: Optional[int] = None,
        timeout: float = 60.0,
        client: Any = None,
    ) -> None:
        import httpx

        self._model_name = model_name
        self._base_url = base_url.rstrip("/")
        self.dimension = dimension
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def embed(self, text: str) -> List[float]:
        import httpx

        try:
            resp = await self._client.post(
                f"{self._base_url}/api/embeddings",
                json={"model": self._model_name, "prompt": text},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("Ollama embedding request failed: %s", exc)
            raise EmbeddingUnavailable("ollama request failed", exc) from exc

        vector = data.get("embedding") or []
        if not vector:
            raise EmbeddingUnavailable("ollama returned an empty embedding")
        return [float(x) for x in vector]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Plain function
# ---------------------------------------------------------------------------

EmbedFunc = Callable[[str], Union[List[float], Awaitable[List[float]]]]


class CallableBackend(EmbeddingBackend):
    """Adapter for a user-supplied ``(text) -> list[float]`` function."""

    name = "callable"

    def __init__(self, func: EmbedFunc, dimension: Optional[int] = None) -> None:
        self._func = func
        self.dimension = dimension

    async def embed(self, text: str) -> List[float]:
        try:
            result = self._func(text)
            if inspect.isawaitable(result):
                result = await result
        except EmbeddingUnavailable:
            raise
        except Exception as exc:
            raise EmbeddingUnavailable("embedding function failed", exc) from exc
        if result is None:
            raise EmbeddingUnavailable("embedding function returned None")
        return [float(x) for x in result]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_embedding_backend(config: Any) -> Optional[EmbeddingBackend]:
    """Build the backend named by ``config.embedding_backend``.

    Returns None for ``"none"`` (text-only operation).
    """
    kind = (config.embedding_backend or "none").lower()
    if kind in ("none", "", "off"):
        return None
    if kind in ("sentence-transformers", "sentence_transformers", "local"):
        return SentenceTransformerBackend(
            model_name=config.embedding_model,
            device=config.embedding_device,
            dimension=config.embedding_dimension,
        )
    if kind == "ollama":
        return OllamaEmbeddingBackend(
            model_name=config.embedding_model,
            base_url=config.ollama_base_url,
            dimension=config.embedding_dimension,
        )
    raise ValueError(f"Unknown embedding backend: {config.embedding_backend!r}")
