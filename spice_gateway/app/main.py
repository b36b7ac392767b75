"""
main.py - SpiceSniff provenance gateway REST + WebSocket API.

Architecture position: between the sensor nodes / dashboard and the
external collaborators.
  ESP32 → POST /api/ingest → live feed → /ws observers
  user  → POST /api/sensor/commit | POST /sensor → IPFS add+pin → registry addBatch
  user  → GET /batch/{id} → registry getBatch → IPFS cat (gateway fallback)

Every route is a thin adapter over service.ProvenanceService.
"""
import logging
import os
from dataclasses import asdict

from dotenv import load_dotenv

# .env must be loaded before the backend modules read their settings
load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from .errors import (  # noqa: E402
    BatchNotFound, ConfirmationTimeout, SpiceGatewayError, TelemetryNotReady,
)
from .hashing import utc_now_iso  # noqa: E402
from .schemas import (  # noqa: E402
    SCHEMA_VERSION, BatchDetail, BatchOut, CommitRequest, CommitResponse,
    HealthOut, MetricsSummary, SensorSubmission, TelemetrySample,
)
from .service import ProvenanceService, get_service  # noqa: E402
from .telemetry import TelemetryFeed, get_feed  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("spice.gateway")

ALLOW_ORIGIN = os.getenv("ALLOW_ORIGIN", "*")

app = FastAPI(
    title="SpiceSniff Provenance Gateway",
    description=(
        "Spice purity telemetry with tamper-evident provenance.\n\n"
        "**Flow**: sensor reading → IPFS (cid) → registry contract anchor\n\n"
        "Live readings are broadcast on `/ws` as `sensorReading` events."
    ),
    version=SCHEMA_VERSION,
)

app.add_middleware(CORSMiddleware, allow_origins=[o.strip() for o in ALLOW_ORIGIN.split(",")],
                   allow_methods=["*"], allow_headers=["*"])


_STATUS_BY_ERROR = {
    BatchNotFound: 404,
    TelemetryNotReady: 400,
    ConfirmationTimeout: 504,
}


@app.exception_handler(SpiceGatewayError)
async def gateway_error_handler(request: Request, exc: SpiceGatewayError):
    status = next((s for kind, s in _STATUS_BY_ERROR.items() if isinstance(exc, kind)), 502)
    if status >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status,
                        content={"detail": {"error": str(exc), "code": exc.code}})


#  System endpoints

@app.get("/health", tags=["system"], response_model=HealthOut)
async def health(service: ProvenanceService = Depends(get_service)):
    return HealthOut(
        ok=True,
        time=utc_now_iso(),
        ipfs=await service.store.is_available(),
        ledger_backend=service.ledger.backend,
        content_backend=service.store.backend,
    )


@app.get("/status", tags=["system"])
async def status(service: ProvenanceService = Depends(get_service),
                 feed: TelemetryFeed = Depends(get_feed)):
    return {
        "status": "ok",
        "timestamp": utc_now_iso(),
        "services": {
            "ipfs": await service.store.is_available(),
            "blockchain": await service.ledger.is_connected(),
            "server": True,
        },
        "observers": feed.observer_count,
        "version": SCHEMA_VERSION,
    }


@app.get("/metrics", tags=["system"], response_model=MetricsSummary)
def metrics(service: ProvenanceService = Depends(get_service)):
    """Commit metrics: store/anchor latency, P95/P99, throughput, error count."""
    return MetricsSummary(**asdict(service.metrics.summary()))


@app.post("/metrics/export", tags=["system"])
def export_metrics(service: ProvenanceService = Depends(get_service)):
    """Write commits.csv + metrics.csv to the results/ directory."""
    path = service.metrics.export()
    return {"exported_to": path, "run_id": service.metrics.run_id}


#  Live telemetry

@app.post("/api/ingest", tags=["telemetry"])
async def ingest(body: TelemetrySample, feed: TelemetryFeed = Depends(get_feed)):
    """Accept a streaming reading, keep it as latest, and broadcast it.

    Nothing is stored or anchored here; use /api/sensor/commit for that.
    """
    sample = feed.accept(body.model_dump())
    delivered = await feed.publish(sample)
    log.info("sensor data device=%s purity=%s grade=%s available=%s observers=%d",
             sample["deviceId"], sample.get("purity"), sample.get("grade"),
             sample.get("available"), delivered)
    return {"status": "ok"}


@app.get("/api/ingest", tags=["telemetry"])
def ingest_info(feed: TelemetryFeed = Depends(get_feed)):
    return {
        "message": "ESP32 sensor data endpoint",
        "method": "This endpoint accepts POST requests",
        "latestData": feed.latest,
        "totalReadings": len(feed.history()),
        "status": "Server is running",
    }


@app.get("/api/sensor/latest", tags=["telemetry"])
def sensor_latest(feed: TelemetryFeed = Depends(get_feed)):
    if feed.latest is None:
        raise HTTPException(404, detail={"error": "No sensor data available", "code": "NO_SENSOR_DATA"})
    return feed.latest


@app.get("/api/sensor/history", tags=["telemetry"])
def sensor_history(feed: TelemetryFeed = Depends(get_feed)):
    """Buffered readings, oldest first."""
    return feed.history()


@app.websocket("/ws")
async def telemetry_ws(ws: WebSocket, feed: TelemetryFeed = Depends(get_feed)):
    await ws.accept()
    try:
        await feed.connect(ws)
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        feed.disconnect(ws)


#  Batch commit

@app.post("/api/sensor/commit", tags=["batches"], response_model=CommitResponse)
async def commit_latest(body: CommitRequest,
                        service: ProvenanceService = Depends(get_service),
                        feed: TelemetryFeed = Depends(get_feed)):
    """Promote the latest live reading into an anchored batch."""
    result = await service.promote_latest(body.batch_id, body.spice, feed)
    return CommitResponse(**result)


@app.post("/sensor", tags=["batches"], response_model=CommitResponse)
async def submit_sensor_batch(body: SensorSubmission,
                              service: ProvenanceService = Depends(get_service)):
    """Store a full batch document on IPFS and anchor its cid on-chain."""
    log.info("receiving data for batch_id=%s", body.batch_id)
    result = await service.submit_batch(body.batch_id, body.spice, body.model_dump())
    return CommitResponse(**result)


#  Batch queries

@app.get("/batch/{batch_id}", tags=["batches"], response_model=BatchDetail)
async def get_batch(batch_id: str, service: ProvenanceService = Depends(get_service)):
    """On-chain metadata merged with the document hydrated from IPFS."""
    return await service.fetch_batch(batch_id)


@app.get("/batches", tags=["batches"], response_model=list[BatchOut])
async def list_batches(service: ProvenanceService = Depends(get_service)):
    records = await service.list_batches()
    return [r.to_dict() for r in records]
