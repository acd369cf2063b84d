"""
Admin Endpoints

Outbox and dead-letter visibility for operators. Read only: failed
records are never republished from here.
"""

from datetime import timedelta

from fastapi import APIRouter, HTTPException, Query, Request

from ...services.runtime import ServiceRuntime
from ...timeutil import utcnow

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Unsent records older than this count as stuck
STUCK_AFTER = timedelta(hours=1)


def _outbox_runtime(request: Request) -> ServiceRuntime:
    runtime = request.app.state.runtime
    if runtime.dispatcher is None:
        raise HTTPException(status_code=404, detail=f"Service {runtime.name} has no outbox")
    return runtime


@router.get("/outbox/stats")
async def outbox_stats(request: Request):
    """Get outbox statistics."""
    runtime = _outbox_runtime(request)
    table = runtime.dispatcher.table

    row = await runtime.db.fetchrow(
        f"""
        SELECT
            SUM(CASE WHEN sent_at IS NULL THEN 1 ELSE 0 END) AS unsent,
            SUM(CASE WHEN sent_at IS NOT NULL THEN 1 ELSE 0 END) AS sent,
            SUM(CASE WHEN failed_at IS NOT NULL THEN 1 ELSE 0 END) AS failed,
            SUM(CASE WHEN sent_at IS NULL AND created_at < $1 THEN 1 ELSE 0 END) AS stuck
        FROM {table}
        """,
        utcnow() - STUCK_AFTER
    )
    counts = {key: int(row[key] or 0) for key in ("unsent", "sent", "failed", "stuck")}

    return {
        **counts,
        "healthy": counts["stuck"] == 0
    }


@router.get("/outbox/failed")
async def list_failed_records(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """List outbox records whose messages were dead-lettered."""
    runtime = _outbox_runtime(request)

    entries = await runtime.dead_letters.get_entries(limit=limit, offset=offset)
    total = await runtime.dead_letters.get_count()

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/outbox/failed/stats")
async def failed_record_stats(request: Request):
    """Failed record counts per topic."""
    runtime = _outbox_runtime(request)
    return await runtime.dead_letters.get_stats()
