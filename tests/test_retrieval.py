"""In-memory vector retriever."""

from types import SimpleNamespace

import pytest

from cvgraph import llm
from cvgraph.retrieval import MAX_K, Document, VectorRetriever, check_k, openai_embedder

VOCAB = ["resume", "interview", "python", "learning"]


def embed(texts):
    return [[t.lower().count(w) for w in VOCAB] for t in texts]


DOCS = [
    Document("Resume formatting"),
    Document("Python interview drills"),
    Document("Learning python fast"),
    Document("Unrelated note"),
]


def test_ranked_by_cosine_similarity():
    retriever = VectorRetriever(embed, DOCS)
    top = retriever.retrieve("python learning", k=2)
    assert [d.text for d in top] == ["Learning python fast", "Python interview drills"]


def test_k_caps_result_size():
    retriever = VectorRetriever(embed, DOCS)
    assert len(retriever.retrieve("python", k=1)) == 1
    assert len(retriever.retrieve("python", k=MAX_K)) == len(DOCS)


def test_empty_corpus():
    assert VectorRetriever(embed).retrieve("anything") == []


def test_add_extends_corpus():
    retriever = VectorRetriever(embed, DOCS[:1])
    retriever.add([Document("Interview checklist", {"source": "faq"})])
    assert len(retriever) == 2
    top = retriever.retrieve("interview", k=1)[0]
    assert top.to_dict() == {"text": "Interview checklist", "metadata": {"source": "faq"}}


def test_zero_vector_query_does_not_fail():
    retriever = VectorRetriever(embed, DOCS)
    assert len(retriever.retrieve("nothing matches", k=3)) == 3


@pytest.mark.parametrize("k", [0, -1, MAX_K + 1])
def test_k_out_of_range(k):
    with pytest.raises(ValueError):
        check_k(k)
    with pytest.raises(ValueError):
        VectorRetriever(embed, DOCS).retrieve("python", k=k)


# ── OpenAI embeddings ─────────────────────────────────────────────────────────

class _FakeEmbeddings:
    def __init__(self):
        self.calls = []

    def create(self, model, input):
        self.calls.append((model, input))
        data = [SimpleNamespace(embedding=row) for row in embed(input)]
        return SimpleNamespace(data=data)


def test_openai_embedder_feeds_retriever(monkeypatch):
    client = SimpleNamespace(embeddings=_FakeEmbeddings())
    providers = []

    def fake_make_client(provider):
        providers.append(provider)
        return client

    monkeypatch.setattr(llm, "make_client", fake_make_client)
    embedder = openai_embedder(model="text-embedding-3-large")
    retriever = VectorRetriever(embedder, DOCS)

    top = retriever.retrieve("python interview", k=1)
    assert [d.text for d in top] == ["Python interview drills"]
    assert providers == ["openai"]
    assert client.embeddings.calls[0] == ("text-embedding-3-large", [d.text for d in DOCS])
    assert client.embeddings.calls[-1] == ("text-embedding-3-large", ["python interview"])


def test_openai_embedder_without_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        openai_embedder()
