from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from pathlib import PurePosixPath
import re

from kbase.errors import ChunkingError
from kbase.services.rag.types import ChunkDraft, ChunkRecord

MARKDOWN_EXTENSIONS = {".md", ".markdown", ".mdx"}
CODE_EXTENSIONS = {
    ".c",
    ".cfg",
    ".cpp",
    ".go",
    ".h",
    ".ini",
    ".java",
    ".js",
    ".json",
    ".py",
    ".rs",
    ".sh",
    ".sql",
    ".toml",
    ".ts",
    ".yaml",
    ".yml",
}

_HEADER_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_HEADER_SNIFF_RE = re.compile(r"^#{1,6}\s+\S", re.MULTILINE)
_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")

_BLOCK, _SENTENCE, _LINE = 0, 1, 2


@dataclass(frozen=True)
class ChunkingResult:
    chunks: tuple[ChunkDraft, ...]

    @property
    def truncated(self) -> bool:
        return any(chunk.truncated for chunk in self.chunks)


@dataclass(frozen=True)
class _Unit:
    text: str
    separator: str
    level: int
    code: bool
    truncated: bool = False


def detect_format(content: str, file_path: str | None = None) -> str:
    if file_path:
        suffix = PurePosixPath(file_path).suffix.lower()
        if suffix in MARKDOWN_EXTENSIONS:
            return "markdown"
        if suffix in CODE_EXTENSIONS:
            return "code"
        if suffix:
            return "text"
    if _HEADER_SNIFF_RE.search(content):
        return "markdown"
    return "text"


def _split_blocks(text: str) -> list[str]:
    """Split on blank lines, keeping fenced code blocks whole."""
    blocks: list[str] = []
    current: list[str] = []
    in_fence = False

    for line in text.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        if not in_fence and not line.strip():
            if current:
                blocks.append("\n".join(current))
                current = []
            continue
        current.append(line.rstrip())

    if current:
        blocks.append("\n".join(current))
    return [block for block in blocks if block.strip()]


def _split_unit(unit: _Unit) -> list[_Unit]:
    if unit.level == _BLOCK and not unit.code:
        sentences = [part.strip() for part in _SENTENCE_BOUNDARY_RE.split(unit.text) if part.strip()]
        if len(sentences) > 1:
            return [
                _Unit(
                    text=sentence,
                    separator=unit.separator if index == 0 else " ",
                    level=_SENTENCE,
                    code=False,
                )
                for index, sentence in enumerate(sentences)
            ]

    lines = [line.rstrip() for line in unit.text.splitlines() if line.strip()]
    return [
        _Unit(
            text=line,
            separator=unit.separator if index == 0 else "\n",
            level=_LINE,
            code=unit.code,
        )
        for index, line in enumerate(lines)
    ]


def _pack_section(
    body: str,
    *,
    prefix: str | None,
    code: bool,
    max_chars: int,
    min_chars: int,
) -> list[ChunkDraft]:
    queue: deque[_Unit] = deque(
        _Unit(
            text=block if code else block.strip(),
            separator="\n\n",
            level=_BLOCK,
            code=code or bool(_FENCE_RE.match(block)),
        )
        for block in _split_blocks(body)
    )

    drafts: list[ChunkDraft] = []
    parts: list[str] = []
    size = 0
    truncated = False

    def flush() -> None:
        nonlocal parts, size, truncated
        if parts:
            drafts.append(ChunkDraft(text="".join(parts), prefix=prefix, truncated=truncated))
        parts = []
        size = 0
        truncated = False

    while queue:
        unit = queue.popleft()

        if len(unit.text) > max_chars:
            if unit.level == _LINE:
                unit = _Unit(
                    text=unit.text[:max_chars],
                    separator=unit.separator,
                    level=_LINE,
                    code=unit.code,
                    truncated=True,
                )
            else:
                queue.extendleft(reversed(_split_unit(unit)))
                continue

        needed = len(unit.text) + (len(unit.separator) if parts else 0)
        if parts and size + needed > max_chars:
            if size < min_chars and unit.level != _LINE:
                pieces = _split_unit(unit)
                if len(pieces) > 1:
                    queue.extendleft(reversed(pieces))
                    continue
            flush()

        if parts:
            parts.append(unit.separator)
            size += len(unit.separator)
        parts.append(unit.text)
        size += len(unit.text)
        truncated = truncated or unit.truncated

    flush()
    return drafts


def _markdown_sections(content: str) -> list[tuple[str | None, str]]:
    sections: list[tuple[str | None, str]] = []
    trail: list[tuple[int, str]] = []
    current: list[str] = []
    in_fence = False

    def close_section() -> None:
        body = "\n".join(current).strip("\n")
        if body.strip():
            prefix = " > ".join(title for _, title in trail) or None
            sections.append((prefix, body))

    for line in content.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            current.append(line)
            continue

        match = None if in_fence else _HEADER_RE.match(line)
        if match is None:
            current.append(line)
            continue

        close_section()
        current = []
        level = len(match.group(1))
        while trail and trail[-1][0] >= level:
            trail.pop()
        trail.append((level, match.group(2).strip()))

    close_section()
    return sections


def chunk_document(
    content: str,
    *,
    file_path: str | None = None,
    max_chars: int,
    min_chars: int,
) -> ChunkingResult:
    if max_chars <= 0:
        raise ValueError("max_chars must be > 0")
    if min_chars < 0:
        raise ValueError("min_chars must be >= 0")
    if min_chars > max_chars:
        raise ValueError("min_chars must not exceed max_chars")
    if not content.strip():
        raise ChunkingError("document has no content to chunk")

    document_format = detect_format(content, file_path)
    drafts: list[ChunkDraft] = []

    if document_format == "markdown":
        for prefix, body in _markdown_sections(content):
            drafts.extend(
                _pack_section(
                    body,
                    prefix=prefix,
                    code=False,
                    max_chars=max_chars,
                    min_chars=min_chars,
                )
            )

    if not drafts:
        drafts = _pack_section(
            content,
            prefix=None,
            code=document_format == "code",
            max_chars=max_chars,
            min_chars=min_chars,
        )

    if not drafts:
        raise ChunkingError("document produced no chunks")
    return ChunkingResult(chunks=tuple(drafts))


def build_chunk_records(
    *,
    doc_id: str,
    source_id: str,
    drafts: tuple[ChunkDraft, ...],
) -> tuple[ChunkRecord, ...]:
    return tuple(
        ChunkRecord(
            chunk_id=f"{doc_id}-{index:04d}",
            doc_id=doc_id,
            source_id=source_id,
            ordinal=index,
            text=draft.text,
            prefix=draft.prefix,
            truncated=draft.truncated,
        )
        for index, draft in enumerate(drafts)
    )
