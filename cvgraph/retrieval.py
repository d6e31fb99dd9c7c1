"""cvgraph retrieval boundary.

Nodes that want extra context depend on the ``Retriever`` protocol:

    retrieve(query, k) -> ordered list of Document(text, metadata)

``VectorRetriever`` is an in-memory implementation: documents are embedded
once with a caller-supplied ``embed`` function and ranked by cosine
similarity (numpy).  ``openai_embedder()`` returns an embed function backed by
OpenAI embeddings; tests pass a deterministic one instead.

Retrievers are passed to nodes at construction time and scoped to one engine
instance; there are no module-level retriever singletons.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol, Sequence

import numpy as np

from cvgraph.logging import get_logger

_log = get_logger("retrieval")

MAX_K = 20

Embedder = Callable[[Sequence[str]], Sequence[Sequence[float]]]


@dataclass(frozen=True)
class Document:
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "metadata": dict(self.metadata)}


class Retriever(Protocol):
    def retrieve(self, query: str, k: int = 4) -> list[Document]:
        ...


def check_k(k: int) -> int:
    if not 1 <= k <= MAX_K:
        raise ValueError(f"k must be between 1 and {MAX_K}, got {k}")
    return k


class VectorRetriever:
    """Cosine-similarity search over an in-memory corpus.

    Parameters
    ----------
    embed :
        ``embed(texts) -> vectors``; called once for the corpus and once per
        query.
    documents :
        Initial corpus.  More can be added with ``add()``.
    """

    def __init__(self, embed: Embedder, documents: Iterable[Document] = ()):
        self._embed = embed
        self._docs: list[Document] = []
        self._matrix: np.ndarray | None = None
        self.add(documents)

    def __len__(self) -> int:
        return len(self._docs)

    def add(self, documents: Iterable[Document]) -> None:
        docs = list(documents)
        if not docs:
            return
        vectors = self._normalise(np.asarray(self._embed([d.text for d in docs]), dtype=np.float32))
        self._matrix = vectors if self._matrix is None else np.vstack([self._matrix, vectors])
        self._docs.extend(docs)
        _log.debug("Indexed %d document(s)  total=%d", len(docs), len(self._docs))

    def retrieve(self, query: str, k: int = 4) -> list[Document]:
        check_k(k)
        if self._matrix is None:
            return []
        q = self._normalise(np.asarray(self._embed([query]), dtype=np.float32))[0]
        scores = self._matrix @ q
        top = np.argsort(-scores, kind="stable")[:k]
        _log.debug("Retrieved %d document(s) for %r", len(top), query[:60])
        return [self._docs[i] for i in top]

    @staticmethod
    def _normalise(vectors: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms


def openai_embedder(model: str = "text-embedding-3-small") -> Embedder:
    """Embed function backed by the OpenAI embeddings endpoint."""
    from cvgraph.llm import make_client

    client = make_client("openai")

    def embed(texts: Sequence[str]) -> list[list[float]]:
        response = client.embeddings.create(model=model, input=list(texts))
        return [item.embedding for item in response.data]

    return embed
