from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .ledger.registry import REGISTRY_SCHEMA_VERSION

SCHEMA_VERSION = "1.0"


class TelemetrySample(BaseModel):
    """Live reading pushed by a sensor node (ESP32 + BME680/MQ-3/MQ-135).

    Only deviceId is mandatory; numeric ids are accepted as strings. Raw
    measurement fields vary by firmware and are kept as-is. purity and grade
    are derived on the device; `available` stays false while the sensors
    warm up.
    """
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    deviceId: str = Field(..., min_length=1, max_length=64)
    available: bool = Field(default=False, description="Sensor warmed up and reading valid")
    purity: Optional[float] = Field(default=None, description="Device-side purity estimate, percent")
    grade: Optional[str] = Field(default=None, max_length=16)


class CommitRequest(BaseModel):
    """Promote the latest live sample into an anchored batch."""
    model_config = ConfigDict(populate_by_name=True)

    batch_id: str = Field(..., alias="batchId", min_length=1, max_length=128)
    spice: str = Field(..., min_length=1, max_length=64)


class SensorSubmission(BaseModel):
    """Full batch document. The whole body is stored off-chain; only the cid is anchored."""
    model_config = ConfigDict(extra="allow")

    batch_id: str = Field(..., min_length=1, max_length=128)
    spice: str = Field(..., min_length=1, max_length=64)


class CommitResponse(BaseModel):
    status: str = "success"
    batch_id: str
    spice_kind: str
    content_id: str
    transaction_ref: str
    block_ref: int
    anchored_at: Optional[str] = None
    purity: Optional[float] = None
    grade: Optional[str] = None


class BatchOut(BaseModel):
    """Anchored batch reference as read from the ledger."""
    batch_id: str
    spice_kind: str
    content_id: str
    anchored_at: Optional[str] = None
    transaction_ref: Optional[str] = None
    block_ref: Optional[int] = None


class BatchDetail(BatchOut):
    document: dict[str, Any]


class HealthOut(BaseModel):
    ok: bool
    time: str
    ipfs: bool
    ledger_backend: str
    content_backend: str
    schema_version: str = SCHEMA_VERSION
    registry_schema: str = REGISTRY_SCHEMA_VERSION


class MetricsSummary(BaseModel):
    run_id: str
    started_at: str
    ended_at: Optional[str] = None
    total_submitted: int
    total_success: int
    total_failed: int
    avg_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    avg_store_ms: float
    avg_anchor_ms: float
    throughput_tps: float
    errors_by_code: dict[str, int] = {}
