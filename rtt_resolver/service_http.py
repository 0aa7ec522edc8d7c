from __future__ import annotations

import argparse
from collections.abc import Iterable
from datetime import date
from typing import Annotated

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from .api import RTTResolverAPI, build_api
from .errors import InsufficientData, InvalidAddress, QueryError, StorageError
from .log import setup_logging
from .models import ClientGroup, RawSample, ResolverConfig, SyncReport

SamplesPayload = Annotated[list[RawSample], Field(min_length=1)]


class IngestRequest(BaseModel):
    """Payload for ingesting raw RTT samples."""

    samples: SamplesPayload


def create_app(
    config: ResolverConfig | None = None,
    *,
    api: RTTResolverAPI | None = None,
    cors_origins: Iterable[str] | None = None,
) -> FastAPI:
    """Construct a FastAPI app backed by RTTResolverAPI."""

    app = FastAPI(title="RTT Proximity Resolver", version="0.1.0")
    app.state.api = api or build_api(config)

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(StorageError)
    def storage_error(request: Request, exc: StorageError) -> PlainTextResponse:
        return PlainTextResponse(str(exc), status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

    @app.exception_handler(QueryError)
    def query_error(request: Request, exc: QueryError) -> PlainTextResponse:
        return PlainTextResponse(str(exc), status_code=status.HTTP_502_BAD_GATEWAY)

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/resolve", response_class=PlainTextResponse)
    def resolve(
        request: Request,
        service: str = Query(..., min_length=1),
        ip: str | None = Query(default=None),
    ) -> PlainTextResponse:
        client_ip = ip or (request.client.host if request.client else "")
        try:
            server = app.state.api.resolve(client_ip, service)
        except InvalidAddress:
            return PlainTextResponse("invalid-address", status_code=status.HTTP_400_BAD_REQUEST)
        except InsufficientData:
            return PlainTextResponse("insufficient-data", status_code=status.HTTP_404_NOT_FOUND)
        return PlainTextResponse(server.address)

    @app.post("/ingest", response_model=SyncReport, status_code=status.HTTP_202_ACCEPTED)
    def ingest(payload: IngestRequest) -> SyncReport:
        return app.state.api.ingest_samples(payload.samples)

    @app.post(
        "/admin/import/day", response_model=SyncReport, status_code=status.HTTP_202_ACCEPTED
    )
    def import_day(day: date = Query(..., alias="date")) -> SyncReport:
        _require_source(app.state.api)
        return app.state.api.import_day(day)

    @app.post(
        "/admin/import/daily", response_model=SyncReport, status_code=status.HTTP_202_ACCEPTED
    )
    def import_daily() -> SyncReport:
        _require_source(app.state.api)
        return app.state.api.import_daily()

    @app.get("/snapshot", response_model=list[ClientGroup])
    def snapshot() -> list[ClientGroup]:
        return app.state.api.snapshot()

    return app


def _require_source(api: RTTResolverAPI) -> None:
    if not api.has_source:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="no analytical source configured",
        )


def run(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the RTT proximity resolver HTTP service.")
    parser.add_argument("--host", default="127.0.0.1", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8000, help="TCP port for the service.")
    parser.add_argument(
        "--store", type=str, default=None, help="Optional JSONL store path for persistence."
    )
    parser.add_argument("--ledger", type=str, default=None, help="Optional import ledger path.")
    parser.add_argument("--registry", type=str, default=None, help="JSON list of servers.")
    parser.add_argument(
        "--samples", type=str, default=None, help="JSONL export used as the analytical source."
    )
    parser.add_argument(
        "--max-read-batch", type=int, default=1000, help="Keys per bulk store read."
    )
    parser.add_argument(
        "--max-write-batch", type=int, default=300, help="Groups per bulk store write."
    )
    parser.add_argument(
        "--cache-ttl-s", type=float, default=600.0, help="Look-aside cache entry lifetime."
    )
    parser.add_argument(
        "--cache-max-entries", type=int, default=100_000, help="Look-aside cache capacity."
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    parser.add_argument(
        "--cors-origin",
        action="append",
        dest="cors_origins",
        default=None,
        help="Optional CORS origin (repeatable).",
    )
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    config = ResolverConfig(
        store_path=args.store,
        ledger_path=args.ledger,
        registry_path=args.registry,
        samples_path=args.samples,
        max_read_batch=args.max_read_batch,
        max_write_batch=args.max_write_batch,
        cache_ttl_s=args.cache_ttl_s,
        cache_max_entries=args.cache_max_entries,
    )
    app = create_app(config=config, cors_origins=args.cors_origins)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


app = create_app()
