"""Tests for hybrid search."""

from unittest.mock import MagicMock

import pytest

from codeseek.config import load_config
from codeseek.core.models import Chunk
from codeseek.exceptions import ValidationError
from codeseek.indexing import Indexer
from codeseek.search import Searcher, highlight, keyword_boost
from codeseek.storage import SearchFilters, open_index


def _chunk(path, index=0, text="", function_name=None):
    return Chunk(
        chunk_id=f"{path}-{index}",
        file_path=path,
        chunk_index=index,
        start_line=1,
        end_line=1,
        language="python",
        content_hash="h",
        text=text,
        function_name=function_name,
    )


@pytest.fixture
def indexer(project, store, embedder, cfg):
    indexer = Indexer(project, store, embedder, cfg)
    yield indexer
    indexer.close()


@pytest.fixture
def searcher(store, embedder, cfg, indexer):
    return Searcher(store, embedder, cfg, executor=indexer.executor, pool=indexer.pool)


class TestSearcher:
    """Test cases for Searcher."""

    @pytest.mark.asyncio
    async def test_finds_parse_config(self, indexer, searcher):
        await indexer.index_directory()

        results = await searcher.search("parse configuration file", limit=5)

        top3 = results[:3]
        match = [r for r in top3 if r.metadata["function_name"] == "parseConfig"]
        assert match, [r.file_path for r in results]
        assert match[0].file_path == "src/config_loader.py"
        assert match[0].similarity > 0.3

    @pytest.mark.asyncio
    async def test_empty_index_returns_nothing(self, searcher):
        assert await searcher.search("anything at all") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   ", "\n\t"])
    async def test_empty_query_rejected_before_embedding(self, store, cfg, query):
        embedder = MagicMock()
        searcher = Searcher(store, embedder, cfg)

        with pytest.raises(ValidationError):
            await searcher.search(query)
        embedder.embed_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_limit_and_metadata(self, indexer, searcher):
        await indexer.index_directory()

        results = await searcher.search("numbers", limit=2, return_context=True)

        assert len(results) <= 2
        first = results[0]
        assert first.file_path == "src/math_utils.py"
        assert set(first.metadata) >= {"start_line", "end_line", "language", "function_name"}
        assert first.metadata["language"] == "python"
        assert "numbers" in first.highlight

    @pytest.mark.asyncio
    async def test_filters_and_min_similarity(self, indexer, searcher):
        await indexer.index_directory()

        js = await searcher.search("fetch user", filters=SearchFilters(languages=["javascript"]))
        assert {r.file_path for r in js} == {"web/client.js"}

        strict = await searcher.search("parse configuration file", min_similarity=0.99)
        assert strict == []

    @pytest.mark.asyncio
    async def test_search_across_indexes(self, tmp_path, overrides, indexer, searcher, embedder):
        await indexer.index_directory()

        other_root = tmp_path / "other"
        (other_root / "lib").mkdir(parents=True)
        (other_root / "lib" / "config_writer.py").write_text(
            "def writeConfig(path, settings):\n    \"\"\"Write the configuration file.\"\"\"\n"
        )
        other_cfg = load_config(other_root, overrides)
        other_store = open_index(other_root / ".codeseek", other_cfg)
        other_store.initialize()
        other_store.bind_model(embedder.model_version, embedder.dimension)
        other = Indexer(other_root, other_store, embedder, other_cfg)
        try:
            await other.index_directory()
        finally:
            other.close()
            other_store.close()

        results = await searcher.search_shards(
            [searcher.store.index_path, other_root / ".codeseek"], "configuration file", limit=5
        )

        origins = {r.metadata["index"] for r in results}
        assert str((other_root / ".codeseek").resolve()) in origins
        assert str(searcher.store.index_path.resolve()) in origins
        functions = {r.metadata["function_name"] for r in results}
        assert {"parseConfig", "writeConfig"} <= functions


class TestRerank:
    """Test cases for the hybrid rerank."""

    @pytest.fixture
    def searcher(self):
        return Searcher(MagicMock(), MagicMock(), {})

    def test_higher_similarity_wins_with_equal_boost(self, searcher):
        a = _chunk("a.py", text="alpha")
        b = _chunk("b.py", text="alpha")
        results = searcher.rerank("alpha", [(b, 0.6), (a, 0.8)], limit=10)

        assert [r.file_path for r in results] == ["a.py", "b.py"]

    def test_keyword_boost_reorders_close_candidates(self, searcher):
        plain = _chunk("plain.py", text="something else")
        lexical = _chunk("lexical.py", text="def load_settings(): pass", function_name="load_settings")
        results = searcher.rerank("load settings", [(plain, 0.52), (lexical, 0.50)], limit=10)

        assert results[0].file_path == "lexical.py"
        assert results[0].similarity == pytest.approx(0.50)
        assert results[0].metadata["keyword_boost"] == pytest.approx(1.0)

    def test_ties_prefer_shorter_path_then_chunk_index(self, searcher):
        hits = [
            (_chunk("src/long/path.py", 0, "x"), 0.5),
            (_chunk("a.py", 1, "x"), 0.5),
            (_chunk("a.py", 0, "x"), 0.5),
        ]
        results = searcher.rerank("unrelated", hits, limit=10)

        assert [(r.file_path, r.chunk_index) for r in results] == [("a.py", 0), ("a.py", 1), ("src/long/path.py", 0)]

    def test_truncates_to_limit(self, searcher):
        hits = [(_chunk(f"f{i}.py", text="x"), 0.9 - i / 100) for i in range(10)]
        assert len(searcher.rerank("x", hits, limit=3)) == 3

    def test_keyword_boost_counts_path_and_function_name(self):
        chunk = _chunk("src/parser.py", text="return 1", function_name="loadConfig")
        assert keyword_boost(["parser", "loadconfig", "missing"], chunk) == pytest.approx(2 / 3)
        assert keyword_boost([], chunk) == 0.0

    def test_highlight(self):
        text = "import os\n\n\ndef parse(path):\n    return open(path).read()\n"
        assert highlight(text, ["parse"], context_lines=1) == "\ndef parse(path):\n    return open(path).read()"
        assert highlight(text, ["nothing"]) is None
