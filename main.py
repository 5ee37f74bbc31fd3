from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from typing import List, Optional
from datetime import datetime
import logging

from config import settings
from errors import ConcurrentJobError, PersistenceError
from models import (
    CleanupReport,
    HealthCheckReport,
    JobKind,
    ProxyCreateRequest,
    ProxyRecord,
    ScrapeSession,
    TriggerResponse,
)
from pipeline import Pipeline, build_pipeline, connect_gateway

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Listing Acquisition Service",
    description="Scheduled listing scraping with proxy rotation, rate limiting and session logging",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline() -> Pipeline:
    pipeline: Optional[Pipeline] = getattr(app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline is not initialized")
    return pipeline


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Connect storage, bootstrap proxies and start the schedules"""
    db = await connect_gateway()
    pipeline = build_pipeline(db)
    app.state.pipeline = pipeline

    try:
        await pipeline.startup()
        logger.info("Service startup completed")
    except PersistenceError as e:
        logger.error(f"Error during startup: {e}")
        logger.warning("Service starting with limited functionality")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is None:
        return
    try:
        await pipeline.shutdown()
        logger.info("Services stopped")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": "listing-acquisition",
        "version": "1.0.0"
    }


@app.get("/scraper/status")
async def scraper_status():
    return await get_pipeline().scheduler.get_status()


@app.get("/scraper/stats")
async def scraper_stats():
    """Session aggregates over the stats window, listing counts and scheduler status"""
    try:
        return await get_pipeline().scheduler.get_stats()
    except PersistenceError as e:
        logger.error(f"Error getting stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to get statistics")


async def _trigger_in_background(kind: JobKind) -> TriggerResponse:
    scheduler = get_pipeline().scheduler
    triggers = {
        JobKind.FULL: scheduler.trigger_full,
        JobKind.INCREMENTAL: scheduler.trigger_incremental,
        JobKind.PRICE_UPDATE: scheduler.trigger_price_update,
    }
    try:
        await triggers[kind](wait=False)
    except ConcurrentJobError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return TriggerResponse(kind=kind, message=f"{kind.value} job started in background")


@app.post("/scrape/full", response_model=TriggerResponse, status_code=202)
async def scrape_full():
    return await _trigger_in_background(JobKind.FULL)


@app.post("/scrape/incremental", response_model=TriggerResponse, status_code=202)
async def scrape_incremental():
    return await _trigger_in_background(JobKind.INCREMENTAL)


@app.post("/scrape/prices", response_model=TriggerResponse, status_code=202)
async def scrape_prices():
    return await _trigger_in_background(JobKind.PRICE_UPDATE)


@app.post("/maintenance/cleanup", response_model=CleanupReport)
async def run_cleanup():
    return await get_pipeline().scheduler.trigger_cleanup()


@app.post("/maintenance/proxy-health", response_model=HealthCheckReport)
async def run_proxy_health():
    try:
        return await get_pipeline().scheduler.trigger_proxy_health()
    except PersistenceError as e:
        logger.error(f"Error running proxy health check: {e}")
        raise HTTPException(status_code=500, detail="Proxy health check failed")


def _public_proxy(proxy: ProxyRecord) -> dict:
    return proxy.model_dump(by_alias=False, exclude={"password"})


# Proxy management endpoints
@app.get("/proxies")
async def list_proxies():
    pipeline = get_pipeline()
    proxies = await pipeline.db.query_proxies(order_by="success_rate")
    return {
        "stats": await pipeline.pool.get_stats(),
        "proxies": [_public_proxy(p) for p in proxies],
    }


@app.post("/proxies", status_code=201)
async def add_proxy(request: ProxyCreateRequest):
    try:
        proxy = await get_pipeline().pool.add_proxy(**request.model_dump())
    except PersistenceError as e:
        logger.error(f"Error adding proxy: {e}")
        raise HTTPException(status_code=500, detail="Failed to add proxy")
    return _public_proxy(proxy)


@app.get("/sessions", response_model=List[ScrapeSession])
async def list_sessions(limit: int = 20):
    return await get_pipeline().session_log.recent(min(max(limit, 1), 100))


@app.get("/sessions/{session_id}", response_model=ScrapeSession)
async def get_session(session_id: str):
    try:
        session = await get_pipeline().session_log.get(session_id)
    except PersistenceError:
        session = None
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=False
    )
