"""Staff-facing moderation endpoints: job inspection, overrides and requeue."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from dancefeedback.infra.auth import require_roles
from dancefeedback.moderation.domain.admin_service import MAX_JOBS_PAGE, ModerationAdminService
from dancefeedback.moderation.domain.container import get_admin_service
from dancefeedback.moderation.domain.errors import ContentNotFound, PersistenceError, QueueUnavailable
from dancefeedback.moderation.domain.models import (
    JobStatus,
    ModeratedContent,
    ModerationJob,
    TargetType,
    parse_level,
    parse_target_type,
)

router = APIRouter(
    prefix="/api/admin/moderation",
    tags=["moderation-admin"],
    dependencies=[Depends(require_roles("Admin", "Moderator"))],
)


class JobItem(BaseModel):
    id: int
    target_type: str = Field(alias="targetType")
    target_id: int = Field(alias="targetId")
    status: str
    attempts: int
    last_error: Optional[str] = Field(default=None, alias="lastError")
    created_at: datetime = Field(alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_job(cls, job: ModerationJob) -> "JobItem":
        return cls(
            id=job.job_id,
            target_type=job.target_type.value,
            target_id=job.target_id,
            status=job.status.value,
            attempts=job.attempts,
            last_error=job.last_error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class RequeueRequest(BaseModel):
    target_type: str = Field(alias="targetType")
    target_id: int = Field(alias="targetId", gt=0)

    model_config = {"populate_by_name": True}


class RequeueResponse(BaseModel):
    success: bool
    job_id: int = Field(alias="jobId")

    model_config = {"populate_by_name": True}


class UpdateModerationRequest(BaseModel):
    level: str = "Green"
    reason: Optional[str] = Field(default=None, max_length=300)
    reason_ru: Optional[str] = Field(default=None, alias="reasonRu", max_length=300)
    reason_en: Optional[str] = Field(default=None, alias="reasonEn", max_length=300)

    model_config = {"populate_by_name": True}


class ModerationStateResponse(BaseModel):
    target_type: str = Field(alias="targetType")
    target_id: int = Field(alias="targetId")
    moderation_level: str = Field(alias="moderationLevel")
    moderation_source: str = Field(alias="moderationSource")
    moderated_at: Optional[datetime] = Field(default=None, alias="moderatedAt")
    moderation_reason: Optional[str] = Field(default=None, alias="moderationReason")
    moderation_reason_ru: Optional[str] = Field(default=None, alias="moderationReasonRu")
    moderation_reason_en: Optional[str] = Field(default=None, alias="moderationReasonEn")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_content(cls, content: ModeratedContent) -> "ModerationStateResponse":
        return cls(
            target_type=content.target_type.value,
            target_id=content.target_id,
            moderation_level=content.moderation_level.value,
            moderation_source=content.moderation_source.value,
            moderated_at=content.moderated_at,
            moderation_reason=content.moderation_reason,
            moderation_reason_ru=content.reason_localized.get("ru"),
            moderation_reason_en=content.reason_localized.get("en"),
        )


class ReportItem(BaseModel):
    id: int
    reporter_id: str = Field(alias="reporterId")
    reason: str
    description: Optional[str] = None
    status: str
    created_at: datetime = Field(alias="createdAt")
    resolved_at: Optional[datetime] = Field(default=None, alias="resolvedAt")

    model_config = {"populate_by_name": True}


@router.get("/jobs", response_model=list[JobItem], response_model_by_alias=True)
async def list_jobs(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    take: int = Query(default=100, ge=1, le=MAX_JOBS_PAGE),
    service: ModerationAdminService = Depends(get_admin_service),
) -> list[JobItem]:
    job_status: JobStatus | None = None
    if status_filter:
        try:
            job_status = JobStatus(status_filter)
        except ValueError:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="invalid_status") from None
    jobs = await _guard(service.list_jobs(job_status, take))
    return [JobItem.from_job(job) for job in jobs]


@router.post("/requeue", response_model=RequeueResponse, response_model_by_alias=True)
async def requeue(
    body: RequeueRequest,
    service: ModerationAdminService = Depends(get_admin_service),
) -> RequeueResponse:
    target_type = _target_type(body.target_type)
    job = await _guard(service.requeue(target_type, body.target_id))
    return RequeueResponse(success=True, job_id=job.job_id)


@router.put("/reviews/{review_id}", response_model=ModerationStateResponse, response_model_by_alias=True)
async def set_review_level(
    review_id: int,
    body: UpdateModerationRequest,
    service: ModerationAdminService = Depends(get_admin_service),
) -> ModerationStateResponse:
    return await _set_level(service, TargetType.REVIEW, review_id, body)


@router.put("/eventreviews/{review_id}", response_model=ModerationStateResponse, response_model_by_alias=True)
async def set_event_review_level(
    review_id: int,
    body: UpdateModerationRequest,
    service: ModerationAdminService = Depends(get_admin_service),
) -> ModerationStateResponse:
    return await _set_level(service, TargetType.EVENT_REVIEW, review_id, body)


@router.get("/reports", response_model=list[ReportItem], response_model_by_alias=True)
async def list_reports(
    target_type: str = Query(alias="targetType"),
    target_id: int = Query(alias="targetId", gt=0),
    service: ModerationAdminService = Depends(get_admin_service),
) -> list[ReportItem]:
    reports = await _guard(service.list_reports(target_type, target_id))
    return [
        ReportItem(
            id=report.report_id,
            reporter_id=report.reporter_id,
            reason=report.reason,
            description=report.description,
            status=report.status,
            created_at=report.created_at,
            resolved_at=report.resolved_at,
        )
        for report in reports
    ]


async def _set_level(
    service: ModerationAdminService,
    target_type: TargetType,
    target_id: int,
    body: UpdateModerationRequest,
) -> ModerationStateResponse:
    try:
        level = parse_level(body.level)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="invalid_level") from None
    localized = {"ru": body.reason_ru, "en": body.reason_en}
    updated = await _guard(service.set_level(target_type, target_id, level, body.reason, localized=localized))
    return ModerationStateResponse.from_content(updated)


def _target_type(value: str) -> TargetType:
    try:
        return parse_target_type(value)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="invalid_target_type") from None


async def _guard(awaitable):
    try:
        return await awaitable
    except ContentNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="not_found") from None
    except (QueueUnavailable, PersistenceError):
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="moderation_unavailable") from None
