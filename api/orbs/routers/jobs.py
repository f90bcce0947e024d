"""Job trigger endpoints.

POST /jobs/orbs/recompute -- run the orbs pipeline once for every enabled topic.

Called by an external scheduler every few minutes. Windows are aligned to
a 5-minute grid, so overlapping triggers converge on the same rows.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from orbs.dependencies import Worker
from orbs.schemas.orbs import RecomputeRequest, RecomputeResponse
from orbs.worker.orbs_worker import BatchAbortedError

router = APIRouter(prefix="/jobs", tags=["jobs"])
log = structlog.get_logger(__name__)


@router.post("/orbs/recompute", response_model=RecomputeResponse)
async def recompute_orbs(
    worker: Worker,
    body: Optional[RecomputeRequest] = Body(default=None),
):
    """Recompute signal state, labels and snapshots for all enabled topics.

    Per-topic failures are reported in ``results`` with ok=false; only
    batch-level failures (category backfill, topic listing) return 500.
    """
    window_minutes = body.window_minutes if body else None
    try:
        return await worker.run(window_minutes)
    except BatchAbortedError as exc:
        log.error("orbs_recompute_aborted", error=exc.error, details=exc.details)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "error": exc.error, "details": exc.details},
        )
