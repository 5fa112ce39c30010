# assetflow/main.py
import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from assetflow.assets import AssetService
from assetflow.celery_app import celery_app
from assetflow.config import Settings, settings
from assetflow.db import close_engine, create_engine, create_session_factory
from assetflow.errors import NotFoundError, ServiceError
from assetflow.models import AssetType
from assetflow.processing_status import ProcessingStatusStore
from assetflow.queues import build_queue_registry
from assetflow.storage import build_blob_store

logger = logging.getLogger("uvicorn.error")


@dataclass
class ApiServices:
    status: ProcessingStatusStore
    assets: AssetService
    engine: Any = None


def build_services(cfg: Settings) -> ApiServices:
    engine = create_engine(cfg.database_url)
    session_factory = create_session_factory(engine)
    redis_client = redis.from_url(cfg.redis_url, decode_responses=True)
    queues = build_queue_registry(cfg, celery_app, redis_client)
    status = ProcessingStatusStore(session_factory, queues)
    assets = AssetService(session_factory, build_blob_store(cfg), status)
    return ApiServices(status=status, assets=assets, engine=engine)


def _asset_type(value: str) -> AssetType:
    try:
        return AssetType(value)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown asset type '{value}'")


def _services(request: Request) -> ApiServices:
    return request.app.state.services


def create_app(cfg: Settings, services: Optional[ApiServices] = None) -> FastAPI:
    app = FastAPI(title="assetflow", version="1.0.0")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup():
        if app.state.services is None:
            app.state.services = build_services(cfg)
            logger.info("assetflow API services initialised")

    @app.on_event("shutdown")
    async def shutdown():
        services = app.state.services
        if services is not None:
            await close_engine(services.engine)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics():
        if not cfg.prometheus_enabled:
            raise HTTPException(status_code=404, detail="metrics disabled")
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/assets/{asset_type}/{asset_id}/status")
    async def asset_status(asset_type: str, asset_id: str, request: Request, x_user_id: str = Header(...)):
        kind = _asset_type(asset_type)
        job = await _services(request).status.get_job(kind, asset_id)
        if job is None or job.user_id != x_user_id:
            raise HTTPException(status_code=404, detail="No processing job for this asset")
        return {
            "asset_type": job.asset_type,
            "asset_id": job.asset_id,
            "status": job.status,
            "stages": job.stages,
            "error_message": job.error_message,
            "retry_count": job.retry_count,
            "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        }

    @app.post("/assets/{asset_type}/{asset_id}/retry")
    async def retry_asset(asset_type: str, asset_id: str, request: Request, response: Response,
                          force: bool = False, x_user_id: str = Header(...)):
        kind = _asset_type(asset_type)
        try:
            result = await _services(request).assets.reprocess_asset(kind, asset_id, x_user_id, force=force)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ServiceError as e:
            raise HTTPException(status_code=503, detail=str(e))
        response.status_code = 202 if result.success else 409
        return {
            "success": result.success,
            "queued": result.queued,
            "already_in_flight": result.already_in_flight,
            "error": result.error,
        }

    return app


app = create_app(settings)
