from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from kbase.config import get_settings
from kbase.errors import NotFoundError, SearchError, StoreUnavailableError, ValidationError
from kbase.logging_config import configure_logging
from kbase.services.rag.engine import KnowledgeEngine
from kbase.services.rag.types import DocumentInput


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    engine = KnowledgeEngine(get_settings())
    app.state.engine = engine
    try:
        yield
    finally:
        engine.close()
        del app.state.engine


app = FastAPI(title="kbase", version="0.1.0", lifespan=lifespan)


class IngestDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: str
    title: str | None = None
    file_path: str | None = None
    doc_id: str | None = None


class IngestRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_id: str = Field(min_length=1)
    documents: list[IngestDocument]


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str
    limit: int | None = Field(default=None, ge=1, le=100)
    source_id: str | None = None


def get_engine(request: Request) -> KnowledgeEngine:
    return request.app.state.engine


EngineDep = Annotated[KnowledgeEngine, Depends(get_engine)]


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SearchError)
def handle_search_error(request: Request, exc: SearchError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailableError)
def handle_store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/health")
def health(engine: EngineDep) -> dict[str, Any]:
    return {"status": "ok", **engine.stats()}


@app.post("/ingest")
def ingest(request: IngestRequest, engine: EngineDep) -> JSONResponse:
    job_id = engine.submit_ingest(
        request.source_id,
        [
            DocumentInput(
                content=document.content,
                title=document.title,
                file_path=document.file_path,
                doc_id=document.doc_id,
            )
            for document in request.documents
        ],
    )
    job = engine.get_job(job_id)
    return JSONResponse(status_code=202, content={"job_id": job_id, "status": job.status.value})


@app.post("/search")
def search(request: SearchRequest, engine: EngineDep) -> dict[str, Any]:
    hits = engine.search(request.query, limit=request.limit, source_id=request.source_id)
    return {"query": request.query, "results": [hit.to_dict() for hit in hits]}


@app.get("/jobs")
def list_jobs(engine: EngineDep) -> list[dict[str, Any]]:
    return [job.to_dict() for job in engine.list_jobs()]


@app.get("/jobs/{job_id}")
def get_job(job_id: str, engine: EngineDep) -> dict[str, Any]:
    return engine.get_job(job_id).to_dict()


@app.get("/jobs/{job_id}/docs")
def get_job_documents(job_id: str, engine: EngineDep) -> list[dict[str, Any]]:
    return [document.to_dict() for document in engine.get_job_documents(job_id)]


@app.get("/sources")
def list_sources(engine: EngineDep) -> list[dict[str, Any]]:
    return [source.to_dict() for source in engine.list_sources()]


@app.get("/sources/{source_id}/docs")
def list_source_documents(source_id: str, engine: EngineDep) -> list[dict[str, Any]]:
    return [document.to_dict() for document in engine.list_documents(source_id)]


@app.get("/docs/{doc_id}")
def get_document(doc_id: str, engine: EngineDep) -> dict[str, Any]:
    return engine.get_document(doc_id).to_dict()


@app.get("/docs/{doc_id}/chunks")
def get_document_chunks(doc_id: str, engine: EngineDep) -> list[dict[str, Any]]:
    return [chunk.to_dict() for chunk in engine.get_document_chunks(doc_id)]


@app.delete("/docs/{doc_id}")
def delete_document(doc_id: str, engine: EngineDep) -> dict[str, Any]:
    engine.delete_document(doc_id)
    return {"deleted": doc_id}


@app.delete("/sources/{source_id}")
def delete_source(source_id: str, engine: EngineDep) -> dict[str, Any]:
    deleted = engine.delete_source(source_id)
    return {"source_id": source_id, "deleted_documents": deleted}


@app.delete("/reset")
def reset(engine: EngineDep) -> dict[str, str]:
    engine.reset_all()
    return {"status": "reset"}


def run() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    uvicorn.run("kbase.main:app", host="127.0.0.1", port=8000, reload=False, log_config=None)


if __name__ == "__main__":
    run()
