"""
Outbox Admin API

Operator endpoints for inspecting and steering outbox events. Every
mutation is checked against the event's current status in the store, so
these are safe to call while dispatchers are running.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from ...shared.error_codes import ErrorCode
from ...shared.exceptions import ConflictError, NotFoundError, ValidationError
from ...shared.middleware import get_correlation_id, get_operator_id, get_trace_id
from ...shared.responses import ListResponse, SuccessResponse
from ....core.database.adapter import get_database
from ....core.outbox.admin import MAX_PAGE_SIZE, OutboxAdminService
from ....core.outbox.config import OutboxConfig
from ....core.outbox.errors import EventNotFoundError, IllegalOperationError
from ....core.outbox.models import BulkResult, OutboxEvent, OutboxStatus
from ....core.outbox.store import EventStore

router = APIRouter(prefix="/api/admin/outbox", tags=["outbox"])

MAX_BULK_IDS = 500
ALL = "ALL"


class BulkRequest(BaseModel):
    """Ids for a bulk operation. Duplicates are collapsed."""
    event_ids: List[int] = Field(..., min_length=1, max_length=MAX_BULK_IDS)


class BulkItemResponse(BaseModel):
    event_id: int
    ok: bool
    status: Optional[OutboxStatus] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class BulkResponse(BaseModel):
    operation: str
    succeeded: int
    failed: int
    results: List[BulkItemResponse]

    @classmethod
    def from_result(cls, result: BulkResult) -> "BulkResponse":
        return cls(
            operation=result.operation,
            succeeded=result.succeeded,
            failed=result.failed,
            results=[
                BulkItemResponse(
                    event_id=r.event_id,
                    ok=r.ok,
                    status=r.status,
                    error_code=r.error_code,
                    message=r.message,
                )
                for r in result.results
            ],
        )


class DeleteResponse(BaseModel):
    event_id: int
    deleted: bool = True


async def get_admin_service(request: Request) -> OutboxAdminService:
    """Admin service bound to the app's database, created on first use."""
    service = getattr(request.app.state, "outbox_admin", None)
    if service is None:
        db = await get_database()
        service = OutboxAdminService(EventStore(db), stale_after=OutboxConfig().stale_after)
        request.app.state.outbox_admin = service
    return service


def _status_filter(status: Optional[str]) -> Optional[OutboxStatus]:
    if status is None or status.upper() == ALL:
        return None
    try:
        return OutboxStatus(status.upper())
    except ValueError:
        allowed = ", ".join([ALL] + [s.value for s in OutboxStatus])
        raise ValidationError(f"Invalid status '{status}'. Expected one of: {allowed}")


def _type_filter(event_type: Optional[str]) -> Optional[str]:
    if not event_type or event_type == ALL:
        return None
    return event_type


def _translate(e: Exception) -> Exception:
    if isinstance(e, EventNotFoundError):
        return NotFoundError("Outbox event", str(e.event_id))
    if isinstance(e, IllegalOperationError):
        return ConflictError(str(e), code=ErrorCode.ILLEGAL_OUTBOX_OPERATION)
    return e


# Collection endpoints (declared before /{event_id})

@router.get("", response_model=ListResponse[OutboxEvent])
async def list_outbox_events(
    status: Optional[str] = Query(None, description="NEW, PROCESSING, SENT, FAILED or ALL"),
    event_type: Optional[str] = Query(None, alias="type"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    service: OutboxAdminService = Depends(get_admin_service),
):
    """List outbox events, newest first."""
    result = await service.list(
        status=_status_filter(status),
        event_type=_type_filter(event_type),
        page=page,
        limit=limit,
    )
    return ListResponse.create(
        data=result.events,
        total=result.total,
        page=result.page,
        limit=result.limit,
        correlation_id=get_correlation_id(),
        trace_id=get_trace_id(),
    )


@router.get("/stats")
async def outbox_stats(
    service: OutboxAdminService = Depends(get_admin_service),
) -> Dict[str, Any]:
    """Counts by status and type, plus stuck and exhausted counts."""
    return await service.stats()


@router.get("/export")
async def export_outbox_events(
    status: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None, alias="type"),
    service: OutboxAdminService = Depends(get_admin_service),
):
    """Export matching events as CSV."""
    content = await service.export_csv(
        status=_status_filter(status),
        event_type=_type_filter(event_type),
    )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="outbox-events.csv"'},
    )


@router.post("/bulk/retry", response_model=BulkResponse)
async def bulk_retry_outbox_events(
    body: BulkRequest,
    service: OutboxAdminService = Depends(get_admin_service),
):
    """Retry many FAILED events. Each id succeeds or fails on its own."""
    result = await service.bulk_retry(body.event_ids, operator_id=get_operator_id())
    return BulkResponse.from_result(result)


@router.post("/bulk/delete", response_model=BulkResponse)
async def bulk_delete_outbox_events(
    body: BulkRequest,
    service: OutboxAdminService = Depends(get_admin_service),
):
    """Delete many SENT or FAILED events. Each id succeeds or fails on its own."""
    result = await service.bulk_delete(body.event_ids, operator_id=get_operator_id())
    return BulkResponse.from_result(result)


# Single-event endpoints

@router.get("/{event_id}", response_model=SuccessResponse[OutboxEvent])
async def get_outbox_event(
    event_id: int,
    service: OutboxAdminService = Depends(get_admin_service),
):
    try:
        event = await service.get(event_id)
    except EventNotFoundError as e:
        raise _translate(e) from e
    return SuccessResponse.create(
        data=event,
        correlation_id=get_correlation_id(),
        trace_id=get_trace_id(),
    )


@router.post("/{event_id}/retry", response_model=SuccessResponse[OutboxEvent])
async def retry_outbox_event(
    event_id: int,
    service: OutboxAdminService = Depends(get_admin_service),
):
    """Requeue a FAILED event, even one whose retries are exhausted."""
    try:
        event = await service.retry(event_id, operator_id=get_operator_id())
    except (EventNotFoundError, IllegalOperationError) as e:
        raise _translate(e) from e
    return SuccessResponse.create(
        data=event,
        correlation_id=get_correlation_id(),
        trace_id=get_trace_id(),
    )


@router.post("/{event_id}/requeue", response_model=SuccessResponse[OutboxEvent])
async def requeue_outbox_event(
    event_id: int,
    older_than_seconds: Optional[float] = Query(None, ge=0, description="Defaults to OUTBOX_STALE_AFTER_SECONDS"),
    service: OutboxAdminService = Depends(get_admin_service),
):
    """Return a PROCESSING event abandoned by a crashed worker to NEW."""
    try:
        event = await service.requeue(
            event_id,
            operator_id=get_operator_id(),
            older_than_seconds=older_than_seconds,
        )
    except (EventNotFoundError, IllegalOperationError) as e:
        raise _translate(e) from e
    return SuccessResponse.create(
        data=event,
        correlation_id=get_correlation_id(),
        trace_id=get_trace_id(),
    )


@router.delete("/{event_id}", response_model=SuccessResponse[DeleteResponse])
async def delete_outbox_event(
    event_id: int,
    service: OutboxAdminService = Depends(get_admin_service),
):
    """Permanently delete a SENT or FAILED event."""
    try:
        await service.delete(event_id, operator_id=get_operator_id())
    except (EventNotFoundError, IllegalOperationError) as e:
        raise _translate(e) from e
    return SuccessResponse.create(
        data=DeleteResponse(event_id=event_id),
        correlation_id=get_correlation_id(),
        trace_id=get_trace_id(),
    )
