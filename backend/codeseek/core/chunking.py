"""Text chunking logic for code files using tree-sitter definition boundaries."""

from __future__ import annotations

import functools
import logging
import os
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

import tree_sitter_language_pack

from ..utils.file_utils import text_sha256
from .models import Chunk

logger = logging.getLogger(__name__)

# Stable namespace so a chunk id depends only on its file, content and position
CHUNK_NAMESPACE = uuid.UUID("6f1c9a52-3b8e-4d57-9a0e-2f4c1b7d8e90")

EXT_TO_LANG = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".swift": "swift",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".c": "c",
    ".h": "c",
    ".hpp": "cpp",
    ".php": "php",
    ".rb": "ruby",
    ".cs": "csharp",
    ".vue": "vue",
    ".svelte": "svelte",
    ".md": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
    ".xml": "xml",
}


def detect_language(file_path: str, content: Optional[str] = None) -> str:
    """Detect language from the file extension, then from content hints."""
    _, ext = os.path.splitext(file_path)
    lang = EXT_TO_LANG.get(ext.lower())
    if lang:
        return lang

    if content:
        head = content[:512]
        if head.startswith("#!") and "python" in head.split("\n", 1)[0]:
            return "python"
        if head.startswith("#!/bin/bash") or head.startswith("#!/bin/sh") or head.startswith("#!/usr/bin/env bash"):
            return "shell"
        if "package main" in content and "func " in content:
            return "go"
        if "fn main()" in content or "use std::" in content:
            return "rust"

    return "unknown"


def get_definition_types(language: str) -> set:
    """Get AST node types that represent top-level definitions.

    A chunk boundary may only start at one of these nodes.

    Args:
        language: Language name (python, javascript, etc)

    Returns:
        Set of AST node type names, empty for languages chunked by window
    """
    mappings = {
        "python": {
            "function_definition",
            "class_definition",
            "decorated_definition",
        },
        "javascript": {
            "function_declaration",
            "generator_function_declaration",
            "class_declaration",
            "lexical_declaration",
            "export_statement",
        },
        "typescript": {
            "function_declaration",
            "class_declaration",
            "abstract_class_declaration",
            "interface_declaration",
            "type_alias_declaration",
            "enum_declaration",
            "lexical_declaration",
            "export_statement",
        },
        "go": {
            "function_declaration",
            "method_declaration",
            "type_declaration",
        },
        "rust": {
            "function_item",
            "struct_item",
            "impl_item",
            "trait_item",
            "enum_item",
            "mod_item",
        },
        "java": {
            "class_declaration",
            "interface_declaration",
            "enum_declaration",
        },
        "kotlin": {
            "function_declaration",
            "class_declaration",
            "object_declaration",
        },
        "swift": {
            "function_declaration",
            "class_declaration",
            "protocol_declaration",
        },
        "cpp": {
            "function_definition",
            "class_specifier",
            "struct_specifier",
            "namespace_definition",
        },
        "c": {
            "function_definition",
            "struct_specifier",
        },
        "php": {
            "function_definition",
            "class_declaration",
            "interface_declaration",
            "trait_declaration",
        },
        "ruby": {
            "method",
            "class",
            "module",
        },
        "csharp": {
            "class_declaration",
            "interface_declaration",
            "struct_declaration",
            "namespace_declaration",
        },
    }
    return mappings.get(language, set())


def _parser_name(language: str, file_path: str) -> str:
    if language == "typescript" and file_path.lower().endswith(".tsx"):
        return "tsx"
    return language


@functools.lru_cache(maxsize=None)
def _get_parser(name: str):
    return tree_sitter_language_pack.get_parser(name)


# Grammars that failed to load, with the reason; never retried in this process
_missing_grammars: Dict[str, str] = {}


def load_parser(name: str):
    """Parser for the grammar `name`, or None when it cannot be loaded.

    Only the first failure per grammar is logged.
    """
    if name in _missing_grammars:
        return None
    try:
        return _get_parser(name)
    except Exception as e:
        _missing_grammars[name] = f"{type(e).__name__}: {e}"
        logger.warning(f"No tree-sitter grammar for {name}, its files are chunked by line windows: {e}")
        return None


def check_grammars(languages: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """Load the grammar of every language that has definition boundaries.

    Returns:
        {grammar name: reason} for each grammar that is unavailable
    """
    if languages is None:
        languages = [lang for lang in set(EXT_TO_LANG.values()) if get_definition_types(lang)]
    names = set()
    for language in languages:
        names.add(language)
        if language == "typescript":
            names.add("tsx")
    for name in sorted(names):
        load_parser(name)
    return {name: reason for name, reason in _missing_grammars.items() if name in names}


def _node_text(node) -> str:
    return node.text.decode("utf-8", errors="replace")


def _definition_name(node) -> Optional[str]:
    """Best-effort name of a definition node.

    Unwraps decorators and export wrappers, then looks at declarators and
    first-level children that carry a name field.
    """
    target = node
    for _ in range(3):
        name = target.child_by_field_name("name")
        if name is not None:
            return _node_text(name)
        inner = target.child_by_field_name("definition") or target.child_by_field_name("declaration")
        if inner is None:
            break
        target = inner

    decl = target.child_by_field_name("declarator")
    while decl is not None:
        if decl.type in ("identifier", "field_identifier", "qualified_identifier", "type_identifier"):
            return _node_text(decl)
        decl = decl.child_by_field_name("declarator")

    for child in target.named_children:
        name = child.child_by_field_name("name")
        if name is not None:
            return _node_text(name)
    return None


def extract_definitions(text: str, language: str, file_path: str = "") -> List[Tuple[int, Optional[str]]]:
    """Return (0-based start row, name) for each top-level definition."""
    definition_types = get_definition_types(language)
    if not definition_types:
        return []

    parser = load_parser(_parser_name(language, file_path))
    if parser is None:
        return []
    tree = parser.parse(text.encode("utf-8"))

    definitions = []
    for child in tree.root_node.children:
        if child.type in definition_types:
            definitions.append((child.start_point[0], _definition_name(child)))
    return definitions


def split_lines(text: str) -> List[str]:
    """Split on '\\n' only, keeping line ends, so rows match tree-sitter rows."""
    parts = text.split("\n")
    lines = [p + "\n" for p in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def is_binary_text(text: str) -> bool:
    return "\x00" in text


class Chunker:
    """Deterministic line-aligned chunker.

    Boundaries follow top-level definitions where tree-sitter understands
    the language and fall back to even fixed windows elsewhere. Every chunk
    after the first starts `overlap_lines` before its nominal start.
    """

    def __init__(
        self,
        min_lines: int = 20,
        max_lines: int = 200,
        overlap_lines: int = 3,
        max_file_size_kb: int = 1024,
    ):
        if min_lines < 1 or max_lines < min_lines:
            raise ValueError(f"Invalid chunk band: min_lines={min_lines}, max_lines={max_lines}")
        self.min_lines = min_lines
        self.max_lines = max_lines
        self.overlap_lines = max(0, overlap_lines)
        self.max_bytes = int(max_file_size_kb * 1024)

    @classmethod
    def from_config(cls, cfg: dict) -> "Chunker":
        return cls(
            min_lines=int(cfg.get("chunk_min_lines", 20)),
            max_lines=int(cfg.get("chunk_max_lines", 200)),
            overlap_lines=int(cfg.get("chunk_overlap_lines", 3)),
            max_file_size_kb=int(cfg.get("max_file_size_kb", 1024)),
        )

    def accepts(self, text: str) -> Optional[str]:
        """Return the reason `text` is rejected, or None if it can be chunked."""
        if not text or not text.strip():
            return "empty"
        if is_binary_text(text):
            return "binary"
        if len(text.encode("utf-8", errors="replace")) > self.max_bytes:
            return "oversized"
        return None

    def chunk(self, file_path: str, text: str, language: Optional[str] = None) -> List[Chunk]:
        reason = self.accepts(text)
        if reason:
            logger.debug(f"Skipping {file_path}: {reason}")
            return []

        language = language or detect_language(file_path, text)
        lines = split_lines(text)
        total_lines = len(lines)

        definitions: List[Tuple[int, Optional[str]]] = []
        try:
            definitions = extract_definitions(text, language, file_path)
        except Exception as e:
            logger.warning(f"AST parsing failed for {file_path}, falling back to line windows: {e}")

        if total_lines <= self.max_lines:
            nominal = [(0, total_lines)]
        else:
            nominal = self._nominal_spans(total_lines, [row for row, _ in definitions])
            logger.debug(
                f"File {file_path}: {total_lines} lines, {len(definitions)} definitions, {len(nominal)} spans"
            )

        file_hash = text_sha256(text)
        chunks: List[Chunk] = []
        prev_start: Optional[int] = None
        for start, end in nominal:
            if not "".join(lines[start:end]).strip():
                continue
            if prev_start is not None:
                start = max(start - self.overlap_lines, prev_start + 1)
            prev_start = start

            chunk_text = "".join(lines[start:end])
            index = len(chunks)
            chunks.append(
                Chunk(
                    chunk_id=str(uuid.uuid5(CHUNK_NAMESPACE, f"{file_path}:{file_hash}:{index}:{start}:{end}")),
                    file_path=file_path,
                    chunk_index=index,
                    start_line=start + 1,
                    end_line=end,
                    language=language,
                    content_hash=text_sha256(chunk_text),
                    text=chunk_text,
                    function_name=_first_name_in(definitions, start, end),
                )
            )
        return chunks

    def _nominal_spans(self, total_lines: int, starts: List[int]) -> List[Tuple[int, int]]:
        """Partition [0, total_lines) into spans inside the size band.

        Spans open at definition starts; short spans are merged forward and
        long ones are cut into even windows.
        """
        bounds = [0] + sorted({row for row in starts if 0 < row < total_lines}) + [total_lines]
        segments = list(zip(bounds[:-1], bounds[1:]))

        groups: List[Tuple[int, int]] = []
        cur_start, cur_end = segments[0]
        for seg_start, seg_end in segments[1:]:
            if (cur_end - cur_start) < self.min_lines and (seg_end - cur_start) <= self.max_lines:
                cur_end = seg_end
            else:
                groups.append((cur_start, cur_end))
                cur_start, cur_end = seg_start, seg_end
        groups.append((cur_start, cur_end))

        if len(groups) > 1:
            last_start, last_end = groups[-1]
            prev_start, _ = groups[-2]
            if (last_end - last_start) < self.min_lines and (last_end - prev_start) <= self.max_lines:
                groups[-2:] = [(prev_start, last_end)]

        spans: List[Tuple[int, int]] = []
        for start, end in groups:
            length = end - start
            if length <= self.max_lines:
                spans.append((start, end))
                continue
            pieces = -(-length // self.max_lines)
            step = -(-length // pieces)
            for window_start in range(start, end, step):
                spans.append((window_start, min(window_start + step, end)))
        return spans


def _first_name_in(definitions: List[Tuple[int, Optional[str]]], start: int, end: int) -> Optional[str]:
    for row, name in definitions:
        if start <= row < end and name:
            return name
    return None


def chunk_text(file_path: str, text: str, cfg: Optional[dict] = None, language: Optional[str] = None) -> List[Chunk]:
    """Chunk text with a chunker built from config (Functional Wrapper)."""
    return Chunker.from_config(cfg or {}).chunk(file_path, text, language=language)
