"""Configuration management for codeseek."""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


DEFAULT_INCLUDE_PATTERNS: List[str] = [
    "*.py", "*.js", "*.jsx", "*.mjs", "*.cjs", "*.ts", "*.tsx",
    "*.go", "*.java", "*.kt", "*.scala", "*.cs",
    "*.rb", "*.php", "*.rs", "*.swift",
    "*.c", "*.h", "*.cpp", "*.hpp",
    "*.vue", "*.svelte",
    "*.md", "*.json", "*.yaml", "*.yml", "*.toml",
    "*.sql", "*.sh", "*.bash", "*.zsh",
]

DEFAULT_EXCLUDE_PATTERNS: List[str] = [
    ".git/**",
    ".hg/**",
    ".svn/**",
    "node_modules/**",
    "vendor/**",
    "dist/**",
    "build/**",
    "out/**",
    "coverage/**",
    ".next/**",
    ".nuxt/**",
    ".cache/**",
    ".venv/**",
    "venv/**",
    "__pycache__/**",
    ".codeseek/**",
    "target/**",
    ".idea/**",
    ".vscode/**",
    "*.lock",
    "*.min.js",
]

def default_max_workers() -> int:
    """One worker per spare core, capped at 4."""
    return max(0, min(4, (os.cpu_count() or 1) - 1))


DEFAULT_CONFIG: Dict = {
    "enabled": True,
    "auto_index": True,
    "index_dir_name": ".codeseek",
    # Absolute index location; overrides index_dir_name when set
    "index_path": None,
    "model_cache_dir": str(Path.home() / ".cache" / "codeseek" / "models"),
    "max_file_size_kb": 1024,
    "chunk_min_lines": 20,
    "chunk_max_lines": 200,
    "chunk_overlap_lines": 3,
    "embedding": {
        "backend": "sentence_transformers",
        "sentence_transformers_model": "sentence-transformers/all-MiniLM-L6-v2",
        "batch_size": 32,
        "local_files_only": False,
        "hashing_dimension": 384,
    },
    "search": {
        "limit": 10,
        "oversample": 3,
        "semantic_weight": 0.85,
        "keyword_weight": 0.15,
        "min_similarity": None,
    },
    "workers": {
        # 0 runs everything in the orchestrating process
        "max_workers": default_max_workers(),
        "shard_size": 16,
        "task_timeout_s": 300.0,
    },
    "events": {"queue_size": 256},
}

# Keys whose change alters chunk boundaries and so invalidates stored chunks
CHUNKING_KEYS = ("chunk_min_lines", "chunk_max_lines", "chunk_overlap_lines", "max_file_size_kb")


def expand_pattern(pattern: str) -> List[str]:
    """Expand pattern to include both root and nested versions.

    Examples:
        '*.py' -> ['*.py', '**/*.py']
        'venv/**' -> ['venv/**', '**/venv/**']
    """
    pattern = pattern.strip()
    if not pattern or pattern.startswith("#"):
        return []

    if pattern.startswith("**/"):
        return [pattern]

    if pattern.startswith("*."):
        return [pattern, "**/" + pattern]

    if "/**" in pattern:
        return [pattern, "**/" + pattern]

    return [pattern]


def expand_patterns(patterns: List[str]) -> List[str]:
    """Expand and deduplicate patterns while preserving order."""
    out: List[str] = []
    seen: set[str] = set()
    for p in patterns:
        for ep in expand_pattern(p):
            if ep not in seen:
                seen.add(ep)
                out.append(ep)
    return out


def _merge(base: Dict, override: Dict) -> Dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env(config: Dict) -> None:
    if os.getenv("CODESEEK_ENABLED") is not None:
        config["enabled"] = _env_bool(os.environ["CODESEEK_ENABLED"])
    if os.getenv("CODESEEK_MODEL_CACHE"):
        config["model_cache_dir"] = os.environ["CODESEEK_MODEL_CACHE"]
    if os.getenv("CODESEEK_EMBEDDING_BACKEND"):
        config["embedding"]["backend"] = os.environ["CODESEEK_EMBEDDING_BACKEND"]
    if os.getenv("CODESEEK_MODEL"):
        config["embedding"]["sentence_transformers_model"] = os.environ["CODESEEK_MODEL"]
    if os.getenv("CODESEEK_OFFLINE") is not None:
        config["embedding"]["local_files_only"] = _env_bool(os.environ["CODESEEK_OFFLINE"])
    if os.getenv("CODESEEK_MAX_WORKERS"):
        config["workers"]["max_workers"] = int(os.environ["CODESEEK_MAX_WORKERS"])


def load_config(repo: Path, overrides: Optional[Dict] = None) -> Dict:
    """Load configuration for a project.

    Defaults are overlaid with `<repo>/<index_dir>/config.json` when present,
    then with `CODESEEK_*` environment variables, then with `overrides`.
    Include and exclude patterns are expanded last.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    project_cfg = Path(repo) / config["index_dir_name"] / "config.json"
    if project_cfg.is_file():
        try:
            _merge(config, json.loads(project_cfg.read_text(encoding="utf-8")))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {project_cfg}: {e}")

    _apply_env(config)

    if overrides:
        _merge(config, copy.deepcopy(overrides))

    config["include_globs"] = expand_patterns(config.get("include_patterns", DEFAULT_INCLUDE_PATTERNS))
    config["exclude_globs"] = expand_patterns(
        DEFAULT_EXCLUDE_PATTERNS + list(config.get("exclude_patterns", []))
    )

    return config


def cfg_fingerprint(cfg: Dict, keys: Optional[tuple] = None) -> str:
    """Generate fingerprint hash for config (or a subset of its keys)."""
    if keys is not None:
        cfg = {k: cfg.get(k) for k in keys}
    payload = json.dumps(cfg, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def index_dir(repo: Path, cfg: Dict) -> Path:
    """Per-project directory holding the vector store and manifest."""
    if cfg.get("index_path"):
        return Path(cfg["index_path"]).expanduser()
    return Path(repo) / cfg.get("index_dir_name", ".codeseek")
