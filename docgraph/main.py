"""Quart application exposing the query and indexing operations over HTTP."""
import asyncio
import uuid
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request

from docgraph import config
from docgraph.container import Services, build_services
from docgraph.errors import (
    BackendUnavailableError,
    DocGraphError,
    EmbeddingFailedError,
    EmptyInputError,
    OperationCancelledError,
    SearchFailedError,
    SynthesisFailedError,
)
from docgraph.log import configure_logging
from docgraph.rag.retriever import QueryOptions

logger = structlog.get_logger()

ERROR_STATUS = {
    EmptyInputError: 400,
    BackendUnavailableError: 503,
    OperationCancelledError: 499,
    EmbeddingFailedError: 502,
    SearchFailedError: 502,
    SynthesisFailedError: 502,
}


class QueryRequest(BaseModel):
    query: str = Field(..., max_length=2000)
    max_results: Optional[int] = None
    repository: Optional[str] = None
    doc_type: Optional[str] = None
    include_related: bool = True


class IndexRequest(BaseModel):
    path: str
    repository: str = Field(..., min_length=1)
    version: Optional[str] = None
    force: bool = False


def _error(code: str, message: str, status: int):
    return jsonify({"error": {"code": code, "message": message}}), status


def _error_response(error: DocGraphError):
    for kind, status in ERROR_STATUS.items():
        if isinstance(error, kind):
            break
    else:
        status = 500
    return jsonify({"error": error.to_dict()}), status


def create_app(services: Services = None) -> Quart:
    """Create the Quart app.

    Args:
        services: Pre-built backends (tests); built on startup when omitted
    """
    app = Quart(__name__)
    state = {"services": services}
    index_lock = asyncio.Lock()

    def get_services() -> Services:
        if state["services"] is None:
            state["services"] = build_services()
        return state["services"]

    @app.before_serving
    async def startup():
        configure_logging()
        get_services()

    @app.route("/api/query", methods=["POST"])
    async def query():
        """Answer a question.

        Expects JSON body:
        {
            "query": "question text",
            "max_results": 5,          // optional, clamped to 1..20
            "repository": "docs",      // optional filter
            "doc_type": "guide",       // optional filter
            "include_related": true    // optional
        }
        """
        data = await request.get_json(silent=True)
        if not data:
            return _error("INVALID_REQUEST", "Missing JSON body", 400)

        try:
            body = QueryRequest.model_validate(data)
        except ValidationError as e:
            logger.warning("invalid_query_request", errors=e.errors(include_url=False))
            return _error("INVALID_REQUEST", "Invalid request body", 400)

        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        options = QueryOptions(
            max_results=config.DEFAULT_MAX_RESULTS if body.max_results is None else body.max_results,
            repository=body.repository,
            doc_type=body.doc_type,
            include_related=body.include_related,
            request_id=request_id,
        )

        try:
            result = await get_services().pipeline.query(body.query, options)
        except DocGraphError as e:
            logger.warning("query_request_failed", request_id=request_id, code=e.code)
            return _error_response(e)

        return jsonify({"request_id": request_id, **result.to_dict()})

    @app.route("/api/index", methods=["POST"])
    async def index():
        """Index a directory of markdown files as one repository.

        Expects JSON body:
        {
            "path": "/srv/docs/repo",
            "repository": "repo",
            "version": "commit-hash",  // optional
            "force": false             // optional
        }
        """
        data = await request.get_json(silent=True)
        if not data:
            return _error("INVALID_REQUEST", "Missing JSON body", 400)

        try:
            body = IndexRequest.model_validate(data)
        except ValidationError as e:
            logger.warning("invalid_index_request", errors=e.errors(include_url=False))
            return _error("INVALID_REQUEST", "Invalid request body", 400)

        services = get_services()
        try:
            async with index_lock:
                stats = await services.indexer.index_directory(
                    Path(body.path),
                    body.repository,
                    version=body.version,
                    force=body.force,
                )
                services.save()
        except FileNotFoundError:
            return _error("NOT_FOUND", "Docs directory not found", 404)
        except DocGraphError as e:
            return _error_response(e)
        except Exception as e:
            logger.error("index_request_failed", error=str(e), error_type=type(e).__name__)
            return _error("INDEXING_FAILED", "Indexing failed", 500)

        return jsonify(stats)

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe.

        Checks:
        - Ollama is reachable and has the embedding and chat models
        - Graph database answers
        """
        services = get_services()
        checks = {
            "status": "healthy",
            "ollama": False,
            "models": False,
            "graph": False,
            "vectors": services.vector_store.get_stats(),
            "embedding_cache": services.cache.stats(),
        }

        try:
            checks["graph_counts"] = await services.graph_store.get_stats()
            checks["graph"] = True

            models = await services.ollama.list_models()
            checks["ollama"] = True
            missing = [m for m in (config.EMBEDDING_MODEL, config.CHAT_MODEL) if m not in models]
            if missing:
                checks["status"] = "unhealthy"
                checks["error"] = f"Missing models: {', '.join(missing)}"
            else:
                checks["models"] = True

        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            checks["status"] = "unhealthy"
            checks["error"] = type(e).__name__

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    @app.route("/health/live")
    async def health_live():
        """Liveness probe."""
        return jsonify({"status": "alive"}), 200

    @app.errorhandler(404)
    async def not_found(error):
        return _error("NOT_FOUND", "Not found", 404)

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return _error("UNEXPECTED_ERROR", "Internal server error", 500)

    return app


app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
