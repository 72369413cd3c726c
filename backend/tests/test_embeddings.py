"""Tests for embedders."""

import sys
import types

import numpy as np
import pytest

from codeseek.core.embeddings import HashingEmbedder, SentenceTransformersEmbedder, l2_normalize, make_embedder
from codeseek.core.tokens import extract_keywords, split_identifier, tokenize
from codeseek.exceptions import ModelUnavailable


class TestHashingEmbedder:
    """Test cases for HashingEmbedder."""

    @pytest.fixture
    def embedder(self):
        return HashingEmbedder(dimension=128, batch_size=2)

    def test_vectors_are_normalized(self, embedder):
        vectors = embedder.embed(["def parse_config(path):", "return a + b", "x"])

        assert len(vectors) == 3
        for v in vectors:
            assert len(v) == 128
            assert np.linalg.norm(v) == pytest.approx(1.0, abs=1e-5)

    def test_deterministic(self, embedder):
        assert embedder.embed_query("load settings") == HashingEmbedder(dimension=128).embed_query("load settings")

    def test_related_text_is_closer(self, embedder):
        query = np.array(embedder.embed_query("parse configuration file"))
        related = np.array(embedder.embed_query("def parseConfig(path): read the config file"))
        unrelated = np.array(embedder.embed_query("multiply two numbers together"))

        assert query @ related > query @ unrelated

    def test_empty_input(self, embedder):
        assert embedder.embed([]) == []

    def test_model_version_includes_dimension(self, embedder):
        assert embedder.model_version == "hashing-v1:128"
        assert embedder.dimension == 128

    def test_invalid_dimension(self):
        with pytest.raises(ValueError):
            HashingEmbedder(dimension=0)


class TestMakeEmbedder:
    """Test cases for the embedder factory."""

    def test_hashing_backend(self):
        emb = make_embedder({"embedding": {"backend": "hashing", "hashing_dimension": 64}})
        assert isinstance(emb, HashingEmbedder)
        assert emb.dimension == 64

    def test_default_backend(self, tmp_path):
        emb = make_embedder({"model_cache_dir": str(tmp_path), "embedding": {}})
        assert isinstance(emb, SentenceTransformersEmbedder)
        assert emb.cache_dir == str(tmp_path)
        assert emb.model is None

    def test_unknown_backend(self):
        with pytest.raises(ModelUnavailable):
            make_embedder({"embedding": {"backend": "nope"}})


class TestSentenceTransformersEmbedder:
    """Test cases for SentenceTransformersEmbedder without downloading a model."""

    def test_load_failure_raises_model_unavailable(self, tmp_path, monkeypatch):
        fake = types.ModuleType("sentence_transformers")

        def _broken(*args, **kwargs):
            raise OSError("model files missing")

        fake.SentenceTransformer = _broken
        monkeypatch.setitem(sys.modules, "sentence_transformers", fake)

        emb = SentenceTransformersEmbedder("some/model", cache_dir=str(tmp_path / "cache"), local_files_only=True)
        with pytest.raises(ModelUnavailable, match="model files missing"):
            emb.embed(["hello"])
        assert emb.model is None

    def test_loads_once_and_normalizes(self, tmp_path, monkeypatch):
        loads = []

        class _Model:
            def __init__(self, name, **kwargs):
                loads.append((name, kwargs))

            def get_sentence_embedding_dimension(self):
                return 3

            def encode(self, texts, **kwargs):
                return np.array([[3.0, 4.0, 0.0] for _ in texts])

        fake = types.ModuleType("sentence_transformers")
        fake.SentenceTransformer = _Model
        monkeypatch.setitem(sys.modules, "sentence_transformers", fake)

        emb = SentenceTransformersEmbedder("tiny", cache_dir=str(tmp_path), batch_size=1)
        vectors = emb.embed(["a", "b"])
        emb.embed_query("c")

        assert len(loads) == 1
        assert loads[0][1]["cache_folder"] == str(tmp_path)
        assert vectors == [pytest.approx([0.6, 0.8, 0.0]), pytest.approx([0.6, 0.8, 0.0])]
        assert emb.model_version == "tiny:3"


class TestTokens:
    """Test cases for identifier-aware tokenization."""

    def test_split_identifier(self):
        assert split_identifier("parseConfig") == ["parse", "config"]
        assert split_identifier("load_file") == ["load", "file"]
        assert split_identifier("HTTPServer") == ["http", "server"]

    def test_tokenize_keeps_whole_identifier(self):
        tokens = tokenize("parseConfig(x)")
        assert "parseconfig" in tokens
        assert "parse" in tokens
        assert "config" in tokens

    def test_keywords_drop_stop_words(self):
        assert extract_keywords("how to parse the configuration file") == ["parse", "configuration", "file"]

    def test_l2_normalize_zero_row(self):
        out = l2_normalize([[0.0, 0.0], [3.0, 4.0]])
        assert out[0].tolist() == [0.0, 0.0]
        assert out[1].tolist() == pytest.approx([0.6, 0.8])
