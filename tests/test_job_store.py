from collections.abc import Iterator
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from kbase.db import create_job_engine
from kbase.models import IngestJobDocumentRecord
from kbase.services.rag.job_store import ABANDONED_CAUSE, JobStore
from kbase.services.rag.types import DocStatus, JobStatus


@pytest.fixture
def job_engine(tmp_path: Path) -> Iterator[Engine]:
    engine = create_job_engine(tmp_path / "jobs.db")
    yield engine
    engine.dispose()


def test_create_records_job_and_documents_with_foreign_keys_on(job_engine: Engine) -> None:
    store = JobStore(job_engine)

    job = store.create("manuals", [("a", "Pump", "pump.md"), ("b", "Valve", None)])

    assert job.status is JobStatus.PENDING
    assert job.total == 2
    assert [document.doc_id for document in store.documents(job.job_id)] == ["a", "b"]
    with Session(job_engine) as session:
        rows = session.scalars(
            select(IngestJobDocumentRecord).order_by(IngestJobDocumentRecord.position)
        ).all()
        assert [(row.job_id, row.doc_id, row.file_path) for row in rows] == [
            (job.job_id, "a", "pump.md"),
            (job.job_id, "b", None),
        ]


def test_progress_survives_reload(job_engine: Engine) -> None:
    store = JobStore(job_engine)
    job = store.create("manuals", [("a", "A", None), ("b", "B", None)])
    store.start(job.job_id)
    store.document_processing(job.job_id, 0)
    store.document_embedded(job.job_id, 0, warning="1 chunk(s) truncated")
    store.document_done(job.job_id, 0)
    store.document_processing(job.job_id, 1)
    store.document_failed(job.job_id, 1, "embedding failed")
    store.finish(job.job_id)

    reloaded = JobStore(job_engine)
    assert reloaded.recover() == 0

    finished = reloaded.get(job.job_id)
    assert finished.status is JobStatus.DONE
    assert (finished.completed, finished.failed, finished.embedded) == (1, 1, 1)
    documents = reloaded.documents(job.job_id)
    assert [document.status for document in documents] == [DocStatus.DONE, DocStatus.FAILED]
    assert documents[0].warning == "1 chunk(s) truncated"
    assert documents[1].error == "embedding failed"
    assert reloaded.wait(job.job_id, timeout=0).job_id == job.job_id


def test_recover_fails_unfinished_jobs(job_engine: Engine) -> None:
    store = JobStore(job_engine)
    job = store.create("manuals", [("a", "A", None), ("b", "B", None)])
    store.start(job.job_id)
    store.document_processing(job.job_id, 0)
    store.document_done(job.job_id, 0)

    reloaded = JobStore(job_engine)
    assert reloaded.recover() == 1

    abandoned = reloaded.get(job.job_id)
    assert abandoned.status is JobStatus.FAILED
    assert abandoned.error == ABANDONED_CAUSE
    assert (abandoned.completed, abandoned.failed) == (1, 1)
    assert reloaded.documents(job.job_id)[1].error == ABANDONED_CAUSE


def test_clear_terminal_removes_rows(job_engine: Engine) -> None:
    store = JobStore(job_engine)
    done = store.create("manuals", [("a", "A", None)])
    store.finish(done.job_id)
    running = store.create("manuals", [("b", "B", None)])

    assert store.clear_terminal() == [done.job_id]
    assert store.get(done.job_id) is None
    assert store.get(running.job_id) is not None
    with Session(job_engine) as session:
        remaining = session.scalars(select(IngestJobDocumentRecord.job_id)).all()
    assert remaining == [running.job_id]
