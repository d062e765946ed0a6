from __future__ import annotations

import argparse
from pathlib import Path
import sys

from kbase.config import get_settings
from kbase.errors import KnowledgeBaseError
from kbase.logging_config import configure_logging
from kbase.services.rag.engine import KnowledgeEngine
from kbase.services.rag.loader import SUPPORTED_EXTENSIONS, load_documents
from kbase.services.rag.types import JobStatus


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kb-ingest",
        description="Ingest a directory of documents into the local knowledge base",
    )
    parser.add_argument("source_dir", help="Directory containing documents to ingest")
    parser.add_argument(
        "--source-id",
        default=None,
        help="Source to ingest into (default: the directory name)",
    )
    parser.add_argument(
        "--ext",
        action="append",
        default=None,
        help=f"File extension to include; repeatable (default: {' '.join(sorted(SUPPORTED_EXTENSIONS))})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the job before giving up (default: no limit)",
    )
    return parser


def _normalize_extensions(values: list[str] | None) -> set[str] | None:
    if not values:
        return None
    return {value if value.startswith(".") else f".{value}" for value in values}


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    source_dir = Path(args.source_dir)
    source_id = args.source_id or source_dir.resolve().name

    try:
        documents = load_documents(source_dir, _normalize_extensions(args.ext))
        with KnowledgeEngine(settings) as engine:
            job_id = engine.submit_ingest(source_id, documents)
            job = engine.wait_for_job(job_id, timeout=args.timeout)
            failures = [
                document
                for document in engine.get_job_documents(job_id)
                if document.error is not None
            ]
    except (KnowledgeBaseError, OSError) as exc:
        print(f"[kb-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    for document in failures:
        print(f"[kb-ingest] {document.file_path or document.doc_id}: {document.error}", file=sys.stderr)

    print(
        "[kb-ingest] "
        f"job_id={job.job_id} "
        f"status={job.status.value} "
        f"source_id={job.source_id} "
        f"total={job.total} "
        f"completed={job.completed} "
        f"failed={job.failed}",
        flush=True,
    )

    if not job.status.is_terminal or job.status is JobStatus.FAILED or job.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
