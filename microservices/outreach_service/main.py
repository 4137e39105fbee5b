"""
Outreach Service Main Application

FastAPI application for audience segments and campaign dispatch.
Port: 8252
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from core.config import get_settings

from .factory import OutreachServiceFactory
from .models import (
    Campaign,
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignStatsResponse,
    CampaignStatus,
    CampaignUpdateRequest,
    CancelRequest,
    DeliveryReceipt,
    DeliveryRecord,
    DeliveryRecordListResponse,
    DeliveryStatus,
    HealthResponse,
    LivenessResponse,
    PreviewRequest,
    PreviewResponse,
    ReadinessResponse,
    ScheduleRequest,
    Segment,
    SegmentCreateRequest,
    SegmentListResponse,
    SegmentPerformance,
    SegmentUpdateRequest,
)
from .protocols import (
    CampaignNotFoundError,
    DeliveryRecordNotFoundError,
    InvalidCampaignStateError,
    InvalidRuleError,
    SegmentInUseError,
    SegmentNotFoundError,
    ValidationError,
)

settings = get_settings()
settings.logging.apply()
logger = logging.getLogger(__name__)

# Service configuration
SERVICE_NAME = settings.service_name
SERVICE_PORT = settings.port
SERVICE_VERSION = "1.0.0"

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[OutreachServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = OutreachServiceFactory(settings)
    await factory.initialize()

    yield

    # Cleanup
    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Outreach Service",
    description="Audience segmentation and campaign dispatch with per-recipient delivery tracking",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(InvalidRuleError)
async def invalid_rule_handler(request: Request, exc: InvalidRuleError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "field": exc.path},
    )


@app.exception_handler(SegmentNotFoundError)
@app.exception_handler(CampaignNotFoundError)
@app.exception_handler(DeliveryRecordNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(InvalidCampaignStateError)
@app.exception_handler(SegmentInUseError)
async def conflict_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "type": type(exc).__name__},
    )


# ====================
# Dependencies
# ====================


def _require_factory() -> OutreachServiceFactory:
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_segment_service():
    """Get segment service from factory"""
    return _require_factory().segment_service


def get_campaign_service():
    """Get campaign service from factory"""
    return _require_factory().campaign_service


def get_reconciler():
    """Get delivery reconciler from factory"""
    return _require_factory().reconciler


def get_scheduler():
    """Get campaign scheduler from factory"""
    return _require_factory().scheduler


def get_actor(request: Request) -> Optional[str]:
    """Caller identity for created_by attribution"""
    return request.headers.get("X-User-ID")


# ====================
# Health Endpoints
# ====================


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        version=SERVICE_VERSION,
        timestamp=datetime.now(timezone.utc),
    )


@app.get("/health/ready", response_model=ReadinessResponse, tags=["Health"])
async def readiness_check():
    """Readiness check endpoint"""
    if not factory:
        return ReadinessResponse(ready=False, checks={"factory": False})

    checks = await factory.health_check()
    return ReadinessResponse(ready=checks.get("database", False), checks=checks)


@app.get("/health/live", response_model=LivenessResponse, tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return LivenessResponse(
        alive=True,
        uptime_seconds=time.time() - startup_time,
    )


# ====================
# Segment Endpoints
# ====================


@app.post(
    "/api/v1/outreach/segments",
    response_model=Segment,
    status_code=status.HTTP_201_CREATED,
    tags=["Segments"],
)
async def create_segment(
    request: SegmentCreateRequest,
    service=Depends(get_segment_service),
    actor: Optional[str] = Depends(get_actor),
):
    """Create a segment from a rule tree"""
    return await service.create_segment(request, created_by=actor)


@app.get("/api/v1/outreach/segments", response_model=SegmentListResponse, tags=["Segments"])
async def list_segments(
    search: Optional[str] = Query(None, description="Search name and description"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    service=Depends(get_segment_service),
):
    """List segments"""
    segments, total = await service.list_segments(search=search, limit=limit, offset=offset)
    return SegmentListResponse(segments=segments, total=total, limit=limit, offset=offset)


@app.post("/api/v1/outreach/segments/preview", response_model=PreviewResponse, tags=["Segments"])
async def preview_segment(
    request: PreviewRequest,
    service=Depends(get_segment_service),
):
    """
    Preview the audience of a rule tree.

    Incomplete trees preview as zero customers.
    """
    return await service.preview(request.rule_tree, sample_size=request.sample_size)


@app.get("/api/v1/outreach/segments/{segment_id}", response_model=Segment, tags=["Segments"])
async def get_segment(segment_id: str, service=Depends(get_segment_service)):
    """Get segment by ID"""
    return await service.get_segment(segment_id)


@app.patch("/api/v1/outreach/segments/{segment_id}", response_model=Segment, tags=["Segments"])
async def update_segment(
    segment_id: str,
    request: SegmentUpdateRequest,
    service=Depends(get_segment_service),
):
    """Update a segment"""
    return await service.update_segment(segment_id, request)


@app.delete("/api/v1/outreach/segments/{segment_id}", tags=["Segments"])
async def delete_segment(segment_id: str, service=Depends(get_segment_service)):
    """Delete a segment no campaign references"""
    deleted = await service.delete_segment(segment_id)
    return {"success": deleted, "message": f"Segment {segment_id} deleted"}


@app.post(
    "/api/v1/outreach/segments/{segment_id}/refresh",
    response_model=Segment,
    tags=["Segments"],
)
async def refresh_segment(segment_id: str, service=Depends(get_segment_service)):
    """Recount a segment's audience"""
    return await service.refresh_segment(segment_id)


@app.get(
    "/api/v1/outreach/segments/{segment_id}/performance",
    response_model=SegmentPerformance,
    tags=["Segments"],
)
async def segment_performance(segment_id: str, service=Depends(get_segment_service)):
    """Delivery results across campaigns sent to a segment"""
    return await service.get_segment_performance(segment_id)


# ====================
# Campaign Endpoints
# ====================


@app.post(
    "/api/v1/outreach/campaigns",
    response_model=Campaign,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
)
async def create_campaign(
    request: CampaignCreateRequest,
    service=Depends(get_campaign_service),
    actor: Optional[str] = Depends(get_actor),
):
    """Create a draft campaign"""
    return await service.create_campaign(request, created_by=actor)


@app.get("/api/v1/outreach/campaigns", response_model=CampaignListResponse, tags=["Campaigns"])
async def list_campaigns(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status (comma-separated)"),
    segment_id: Optional[str] = Query(None, description="Filter by segment"),
    search: Optional[str] = Query(None, description="Search by name"),
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    service=Depends(get_campaign_service),
):
    """List campaigns with filters"""
    statuses: Optional[List[CampaignStatus]] = None
    if status_filter:
        try:
            statuses = [CampaignStatus(s.strip()) for s in status_filter.split(",") if s.strip()]
        except ValueError as e:
            raise ValidationError(str(e), "status")

    campaigns, total = await service.list_campaigns(
        status=statuses,
        segment_id=segment_id,
        search=search,
        limit=limit,
        offset=offset,
    )
    return CampaignListResponse(campaigns=campaigns, total=total, limit=limit, offset=offset)


@app.get("/api/v1/outreach/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
async def get_campaign(campaign_id: str, service=Depends(get_campaign_service)):
    """Get campaign by ID"""
    return await service.get_campaign(campaign_id)


@app.patch("/api/v1/outreach/campaigns/{campaign_id}", response_model=Campaign, tags=["Campaigns"])
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdateRequest,
    service=Depends(get_campaign_service),
):
    """Update a campaign"""
    return await service.update_campaign(campaign_id, request)


@app.delete("/api/v1/outreach/campaigns/{campaign_id}", tags=["Campaigns"])
async def delete_campaign(campaign_id: str, service=Depends(get_campaign_service)):
    """Delete a draft campaign"""
    deleted = await service.delete_campaign(campaign_id)
    return {"success": deleted, "message": f"Campaign {campaign_id} deleted"}


@app.post(
    "/api/v1/outreach/campaigns/{campaign_id}/schedule",
    response_model=Campaign,
    tags=["Campaigns"],
)
async def schedule_campaign(
    campaign_id: str,
    request: Optional[ScheduleRequest] = Body(None),
    service=Depends(get_campaign_service),
):
    """Schedule a draft campaign; defaults to the stored time, else now"""
    return await service.schedule_campaign(
        campaign_id, scheduled_at=request.scheduled_at if request else None
    )


@app.post(
    "/api/v1/outreach/campaigns/{campaign_id}/cancel",
    response_model=Campaign,
    tags=["Campaigns"],
)
async def cancel_campaign(
    campaign_id: str,
    request: Optional[CancelRequest] = Body(None),
    service=Depends(get_campaign_service),
):
    """Cancel a campaign that has not finished"""
    return await service.cancel_campaign(campaign_id, reason=request.reason if request else None)


@app.get(
    "/api/v1/outreach/campaigns/{campaign_id}/stats",
    response_model=CampaignStatsResponse,
    tags=["Campaigns"],
)
async def get_campaign_stats(campaign_id: str, service=Depends(get_campaign_service)):
    """Delivery stats of a campaign"""
    return await service.get_campaign_stats(campaign_id)


@app.get(
    "/api/v1/outreach/campaigns/{campaign_id}/deliveries",
    response_model=DeliveryRecordListResponse,
    tags=["Campaigns"],
)
async def list_delivery_records(
    campaign_id: str,
    status_filter: Optional[DeliveryStatus] = Query(None, alias="status", description="Filter by delivery status"),
    limit: int = Query(100, ge=1, le=1000, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    service=Depends(get_campaign_service),
):
    """Delivery log of a campaign"""
    records, total = await service.list_delivery_records(
        campaign_id, status=status_filter, limit=limit, offset=offset
    )
    return DeliveryRecordListResponse(records=records, total=total, limit=limit, offset=offset)


# ====================
# Delivery Receipts & Scheduler
# ====================


@app.post(
    "/api/v1/outreach/receipts",
    response_model=DeliveryRecord,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Deliveries"],
)
async def post_receipt(receipt: DeliveryReceipt, reconciler=Depends(get_reconciler)):
    """Push endpoint for broker delivery receipts"""
    return await reconciler.on_receipt(
        receipt.campaign_id,
        receipt.recipient_id,
        receipt.status,
        error=receipt.error_message,
    )


@app.post("/api/v1/outreach/scheduler/poll", tags=["Scheduler"])
async def poll_scheduler(scheduler=Depends(get_scheduler)):
    """Run one scheduler poll now"""
    claimed = await scheduler.poll_once()
    return {"claimed": claimed, "count": len(claimed)}


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.outreach_service.main:app",
        host=settings.host,
        port=SERVICE_PORT,
        reload=settings.debug,
        log_level=settings.logging.log_level.lower(),
    )


if __name__ == "__main__":
    main()
