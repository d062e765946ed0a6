"""Job table: immutable in-memory snapshots written through to ``jobs.db``.

Readers take the current snapshot without locking. Every transition builds new
frozen values under the table lock, persists them, then swaps them in.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import threading
import uuid

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import structlog

from kbase.errors import StoreUnavailableError
from kbase.models import IngestJobDocumentRecord, IngestJobRecord
from kbase.services.rag.sqlite_store import utc_now
from kbase.services.rag.types import DocStatus, JobDocumentInfo, JobSnapshot, JobStatus

logger = structlog.get_logger(logger_name=__name__)

ABANDONED_CAUSE = "abandoned: process restarted before completion"


@dataclass(frozen=True)
class JobEntry:
    job: JobSnapshot
    documents: tuple[JobDocumentInfo, ...]


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _entry_from_records(
    record: IngestJobRecord, documents: Sequence[IngestJobDocumentRecord]
) -> JobEntry:
    return JobEntry(
        job=JobSnapshot(
            job_id=record.id,
            source_id=record.source_id,
            status=JobStatus(record.status),
            total=record.total,
            embedded=record.embedded,
            completed=record.completed,
            failed=record.failed,
            current_doc=record.current_doc,
            error=record.error,
            created_at=_aware(record.created_at),
            updated_at=_aware(record.updated_at),
            finished_at=_aware(record.finished_at),
        ),
        documents=tuple(
            JobDocumentInfo(
                position=document.position,
                doc_id=document.doc_id,
                title=document.title,
                file_path=document.file_path,
                status=DocStatus(document.status),
                error=document.error,
                warning=document.warning,
            )
            for document in sorted(documents, key=lambda item: item.position)
        ),
    )


def _apply_job(record: IngestJobRecord, job: JobSnapshot) -> None:
    record.status = job.status.value
    record.embedded = job.embedded
    record.completed = job.completed
    record.failed = job.failed
    record.current_doc = job.current_doc
    record.error = job.error
    record.updated_at = job.updated_at
    record.finished_at = job.finished_at


def _apply_document(record: IngestJobDocumentRecord, document: JobDocumentInfo) -> None:
    record.status = document.status.value
    record.error = document.error
    record.warning = document.warning


class JobStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self._entries: dict[str, JobEntry] = {}
        self._events: dict[str, threading.Event] = {}

    def recover(self) -> int:
        """Load persisted jobs and fail the ones a previous process left unfinished."""
        now = utc_now()
        abandoned = 0
        with self._lock:
            try:
                with Session(self._engine) as session:
                    records = session.scalars(select(IngestJobRecord)).all()
                    documents_by_job: dict[str, list[IngestJobDocumentRecord]] = {}
                    for document in session.scalars(select(IngestJobDocumentRecord)).all():
                        documents_by_job.setdefault(document.job_id, []).append(document)

                    entries: dict[str, JobEntry] = {}
                    for record in records:
                        documents = documents_by_job.get(record.id, [])
                        if not JobStatus(record.status).is_terminal:
                            failed = 0
                            for document in documents:
                                if not DocStatus(document.status).is_terminal:
                                    document.status = DocStatus.FAILED.value
                                    document.error = ABANDONED_CAUSE
                                    failed += 1
                            record.failed += failed
                            record.status = JobStatus.FAILED.value
                            record.error = ABANDONED_CAUSE
                            record.current_doc = None
                            record.updated_at = now
                            record.finished_at = now
                            abandoned += 1
                        entries[record.id] = _entry_from_records(record, documents)
                    session.commit()
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"job store recovery failed: {exc}") from exc

            self._entries = entries
            self._events = {}
            for job_id in entries:
                event = threading.Event()
                event.set()
                self._events[job_id] = event

        if abandoned:
            logger.warning("jobs_abandoned", count=abandoned, cause=ABANDONED_CAUSE)
        logger.info("jobs_loaded", count=len(entries))
        return abandoned

    def create(self, source_id: str, documents: Sequence[tuple[str, str, str | None]]) -> JobSnapshot:
        now = utc_now()
        job_id = uuid.uuid4().hex
        entry = JobEntry(
            job=JobSnapshot(
                job_id=job_id,
                source_id=source_id,
                status=JobStatus.PENDING,
                total=len(documents),
                embedded=0,
                completed=0,
                failed=0,
                current_doc=None,
                error=None,
                created_at=now,
                updated_at=now,
            ),
            documents=tuple(
                JobDocumentInfo(
                    position=position,
                    doc_id=doc_id,
                    title=title,
                    file_path=file_path,
                    status=DocStatus.PENDING,
                )
                for position, (doc_id, title, file_path) in enumerate(documents)
            ),
        )

        with self._lock:
            try:
                with Session(self._engine) as session:
                    session.add(
                        IngestJobRecord(
                            id=job_id,
                            source_id=source_id,
                            status=entry.job.status.value,
                            total=entry.job.total,
                            embedded=0,
                            completed=0,
                            failed=0,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    # no relationship() links the tables, so the parent row must exist first
                    session.flush()
                    session.add_all(
                        IngestJobDocumentRecord(
                            job_id=job_id,
                            position=document.position,
                            doc_id=document.doc_id,
                            title=document.title,
                            file_path=document.file_path,
                            status=document.status.value,
                        )
                        for document in entry.documents
                    )
                    session.commit()
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"cannot record job: {exc}") from exc

            self._entries = {**self._entries, job_id: entry}
            self._events = {**self._events, job_id: threading.Event()}
        return entry.job

    def get(self, job_id: str) -> JobSnapshot | None:
        entry = self._entries.get(job_id)
        return entry.job if entry is not None else None

    def documents(self, job_id: str) -> tuple[JobDocumentInfo, ...] | None:
        entry = self._entries.get(job_id)
        return entry.documents if entry is not None else None

    def list_jobs(self) -> list[JobSnapshot]:
        jobs = [entry.job for entry in self._entries.values()]
        return sorted(jobs, key=lambda job: (job.created_at, job.job_id), reverse=True)

    def wait(self, job_id: str, timeout: float | None = None) -> JobSnapshot | None:
        event = self._events.get(job_id)
        if event is None:
            return None
        event.wait(timeout)
        return self.get(job_id)

    def _transition(
        self,
        job_id: str,
        mutate: Callable[[JobEntry, datetime], tuple[JobEntry, Sequence[int]]],
    ) -> JobSnapshot | None:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                return None

            updated, positions = mutate(entry, utc_now())
            if updated is entry:
                return entry.job

            self._persist(updated, positions)
            self._entries = {**self._entries, job_id: updated}
            if updated.job.status.is_terminal:
                event = self._events.get(job_id)
                if event is not None:
                    event.set()
            return updated.job

    def _persist(self, entry: JobEntry, positions: Sequence[int]) -> None:
        try:
            with Session(self._engine) as session:
                record = session.get(IngestJobRecord, entry.job.job_id)
                if record is None:
                    return
                _apply_job(record, entry.job)
                for position in positions:
                    document_record = session.get(
                        IngestJobDocumentRecord, (entry.job.job_id, position)
                    )
                    if document_record is not None:
                        _apply_document(document_record, entry.documents[position])
                session.commit()
        except SQLAlchemyError as exc:
            # the in-memory table stays authoritative for this process
            logger.error("job_persist_failed", job_id=entry.job.job_id, error=str(exc))

    def start(self, job_id: str) -> JobSnapshot | None:
        def mutate(entry: JobEntry, now: datetime) -> tuple[JobEntry, Sequence[int]]:
            if entry.job.status is not JobStatus.PENDING:
                return entry, ()
            job = replace(entry.job, status=JobStatus.PROCESSING, updated_at=now)
            return replace(entry, job=job), ()

        return self._transition(job_id, mutate)

    def document_processing(self, job_id: str, position: int) -> JobSnapshot | None:
        def mutate(entry: JobEntry, now: datetime) -> tuple[JobEntry, Sequence[int]]:
            document = entry.documents[position]
            if document.status is not DocStatus.PENDING:
                return entry, ()
            documents = list(entry.documents)
            documents[position] = replace(document, status=DocStatus.PROCESSING)
            job = replace(entry.job, current_doc=document.doc_id, updated_at=now)
            return JobEntry(job=job, documents=tuple(documents)), (position,)

        return self._transition(job_id, mutate)

    def document_embedded(
        self, job_id: str, position: int, *, warning: str | None = None
    ) -> JobSnapshot | None:
        def mutate(entry: JobEntry, now: datetime) -> tuple[JobEntry, Sequence[int]]:
            document = entry.documents[position]
            if document.status.is_terminal:
                return entry, ()
            documents = list(entry.documents)
            documents[position] = replace(document, warning=warning)
            job = replace(
                entry.job,
                embedded=min(entry.job.total, entry.job.embedded + 1),
                updated_at=now,
            )
            return JobEntry(job=job, documents=tuple(documents)), (position,)

        return self._transition(job_id, mutate)

    def document_done(self, job_id: str, position: int) -> JobSnapshot | None:
        return self._finish_document(job_id, position, DocStatus.DONE, None)

    def document_failed(self, job_id: str, position: int, error: str) -> JobSnapshot | None:
        return self._finish_document(job_id, position, DocStatus.FAILED, error)

    def _finish_document(
        self, job_id: str, position: int, status: DocStatus, error: str | None
    ) -> JobSnapshot | None:
        def mutate(entry: JobEntry, now: datetime) -> tuple[JobEntry, Sequence[int]]:
            document = entry.documents[position]
            if document.status.is_terminal:
                return entry, ()
            documents = list(entry.documents)
            documents[position] = replace(document, status=status, error=error)
            job = replace(
                entry.job,
                completed=entry.job.completed + (status is DocStatus.DONE),
                failed=entry.job.failed + (status is DocStatus.FAILED),
                current_doc=None if entry.job.current_doc == document.doc_id else entry.job.current_doc,
                updated_at=now,
            )
            return JobEntry(job=job, documents=tuple(documents)), (position,)

        return self._transition(job_id, mutate)

    def finish(
        self, job_id: str, *, status: JobStatus = JobStatus.DONE, error: str | None = None
    ) -> JobSnapshot | None:
        """Make the job terminal, failing any document that never reached a verdict."""

        def mutate(entry: JobEntry, now: datetime) -> tuple[JobEntry, Sequence[int]]:
            if entry.job.status.is_terminal:
                return entry, ()
            cause = error or "job ended before the document was processed"
            documents = list(entry.documents)
            positions: list[int] = []
            for index, document in enumerate(documents):
                if not document.status.is_terminal:
                    documents[index] = replace(document, status=DocStatus.FAILED, error=cause)
                    positions.append(index)
            job = replace(
                entry.job,
                status=status,
                failed=entry.job.failed + len(positions),
                current_doc=None,
                error=error,
                updated_at=now,
                finished_at=now,
            )
            return JobEntry(job=job, documents=tuple(documents)), positions

        return self._transition(job_id, mutate)

    def cleanup(self, max_age_seconds: float, *, now: datetime | None = None) -> list[str]:
        cutoff = (now or utc_now()) - timedelta(seconds=max_age_seconds)
        with self._lock:
            expired = [
                job_id
                for job_id, entry in self._entries.items()
                if entry.job.status.is_terminal
                and (entry.job.finished_at or entry.job.updated_at) <= cutoff
            ]
            if not expired:
                return []
            self._delete(expired)
        logger.info("jobs_cleaned_up", count=len(expired))
        return expired

    def clear_terminal(self) -> list[str]:
        with self._lock:
            terminal = [
                job_id for job_id, entry in self._entries.items() if entry.job.status.is_terminal
            ]
            if terminal:
                self._delete(terminal)
        return terminal

    def _delete(self, job_ids: list[str]) -> None:
        try:
            with Session(self._engine) as session:
                session.execute(
                    delete(IngestJobDocumentRecord).where(IngestJobDocumentRecord.job_id.in_(job_ids))
                )
                session.execute(delete(IngestJobRecord).where(IngestJobRecord.id.in_(job_ids)))
                session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"cannot delete jobs: {exc}") from exc

        removed = set(job_ids)
        self._entries = {key: value for key, value in self._entries.items() if key not in removed}
        self._events = {key: value for key, value in self._events.items() if key not in removed}
