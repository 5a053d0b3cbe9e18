"""QStash delivery endpoint for creation jobs.

QStash POSTs the job published by QueueDispatcher here and retries on any
non-2xx response. The runner is idempotent, so redeliveries are harmless:
a job whose row already left ``creating`` reports ``skipped``.
"""

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from parascene.api.dependencies import get_job_runner, validate_queue_signature

logger = structlog.get_logger()
router = APIRouter(prefix="/api/create", tags=["worker"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.post("/worker")
async def run_worker(
    raw_body: bytes = Depends(validate_queue_signature),
    job_runner=Depends(get_job_runner),
):
    """Run one creation job delivered by the queue.

    HTTP Status Codes:
        200: {ok: true, ...} job handled (including skipped redeliveries)
        400: Body is not valid JSON
        401: Missing or invalid Upstash-Signature
        500: {ok: false, error: "Worker failed"} (queue redelivers)
        503: Signing keys not configured
    """
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("worker.invalid_json", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid JSON payload: {str(e)}"
        )

    created_image_id = payload.get("created_image_id") if isinstance(payload, dict) else None
    logger.info("worker.received", created_image_id=created_image_id)

    try:
        result = await job_runner(payload)
    except Exception as e:
        logger.error(
            "worker.failed",
            created_image_id=created_image_id,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": "Worker failed"},
            headers=NO_CACHE_HEADERS,
        )

    logger.info(
        "worker.completed",
        created_image_id=created_image_id,
        ok=result.ok,
        skipped=result.skipped,
        reason=result.reason,
    )
    body = result.to_dict()
    body["ok"] = True
    return JSONResponse(content=body, headers=NO_CACHE_HEADERS)
