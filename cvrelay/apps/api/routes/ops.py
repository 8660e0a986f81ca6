from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from cvrelay.services.telemetry import counters_snapshot, external_call_stats

router = APIRouter(prefix="/ops", tags=["ops"])

_INTEGRATIONS = ("shopify.admin", "ads.oauth", "ads.upload.search", "ads.upload.display")


@router.get("/metrics")
async def metrics() -> dict[str, Any]:
    # Process-local view; each API and worker process reports its own counters.
    return {
        "counters": counters_snapshot(),
        "integrations": {name: external_call_stats(name) for name in _INTEGRATIONS},
    }
