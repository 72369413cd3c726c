"""Shared fixtures: a small project tree and an offline configuration."""

import textwrap
from pathlib import Path

import pytest

from codeseek.config import load_config
from codeseek.core.embeddings import HashingEmbedder
from codeseek.storage import open_index

CONFIG_LOADER = textwrap.dedent(
    '''\
    import json


    def parseConfig(path):
        """Parse the configuration file at path and return its settings."""
        with open(path) as config_file:
            return json.load(config_file)
    '''
)

MATH_UTILS = textwrap.dedent(
    '''\
    def add_numbers(a, b):
        return a + b


    def multiply_numbers(a, b):
        return a * b
    '''
)

HTTP_CLIENT = textwrap.dedent(
    '''\
    export async function fetchUser(id) {
      const response = await fetch(`/api/users/${id}`);
      return response.json();
    }
    '''
)

README = "# Demo\n\nA small demo project for semantic search.\n"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep CODESEEK_* variables from the developer's shell out of the tests."""
    for name in (
        "CODESEEK_ENABLED",
        "CODESEEK_MODEL_CACHE",
        "CODESEEK_EMBEDDING_BACKEND",
        "CODESEEK_MODEL",
        "CODESEEK_OFFLINE",
        "CODESEEK_MAX_WORKERS",
        "CODESEEK_PROJECT",
        "CODESEEK_DB_PATH",
        "CODESEEK_SHARDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def overrides(tmp_path):
    return {
        "auto_index": False,
        "model_cache_dir": str(tmp_path / "models"),
        "embedding": {"backend": "hashing", "hashing_dimension": 256},
        "workers": {"max_workers": 0, "shard_size": 2},
    }


@pytest.fixture
def project(tmp_path) -> Path:
    root = tmp_path / "project"
    files = {
        "src/config_loader.py": CONFIG_LOADER,
        "src/math_utils.py": MATH_UTILS,
        "web/client.js": HTTP_CLIENT,
        "README.md": README,
        "node_modules/lib/index.js": "module.exports = function ignored() {};\n",
        ".hidden/secret.py": "TOKEN = 'x'\n",
    }
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    (root / "src" / "blob.py").write_bytes(b"\x00\x01\x02binary\x00")
    return root


@pytest.fixture
def cfg(project, overrides):
    return load_config(project, overrides)


@pytest.fixture
def embedder():
    return HashingEmbedder(dimension=256)


@pytest.fixture
def store(project, cfg, embedder):
    store = open_index(project / ".codeseek", cfg)
    store.initialize()
    store.bind_model(embedder.model_version, embedder.dimension)
    yield store
    store.close()
