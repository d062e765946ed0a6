from __future__ import annotations

from pathlib import Path

from kbase.errors import ValidationError
from kbase.services.rag.chunker import CODE_EXTENSIONS, MARKDOWN_EXTENSIONS
from kbase.services.rag.types import DocumentInput

SUPPORTED_EXTENSIONS = {".txt", ".rst", *MARKDOWN_EXTENSIONS, *CODE_EXTENSIONS}


def load_documents(
    source_dir: Path,
    supported_extensions: set[str] | None = None,
) -> list[DocumentInput]:
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Source path is not a directory: {source_dir}")

    extensions = {extension.lower() for extension in (supported_extensions or SUPPORTED_EXTENSIONS)}
    files = sorted(
        path
        for path in source_dir.rglob("*")
        if path.is_file()
        and path.suffix.lower() in extensions
        and not any(part.startswith(".") for part in path.relative_to(source_dir).parts)
    )

    documents: list[DocumentInput] = []
    for path in files:
        text = path.read_text(encoding="utf-8", errors="replace")
        if not text.strip():
            continue

        documents.append(
            DocumentInput(
                content=text,
                title=path.stem,
                file_path=path.relative_to(source_dir).as_posix(),
            )
        )

    if not documents:
        raise ValidationError(
            f"No non-empty supported documents found in {source_dir} "
            f"(supported: {sorted(extensions)})"
        )

    return documents
