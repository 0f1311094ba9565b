from fastapi import APIRouter, Depends, HTTPException, status as http_status

from jobboard_api.core.security import get_human_principal, require_principal_scopes
from jobboard_api.schemas.job_posts import JobPostApprovalOut, JobPostCreateRequest, JobPostOut, JobPostRejectRequest
from jobboard_api.services.moderation import approve_job_post, reject_job_post, submit_job_post
from jobboard_api.services.repository import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.post("", response_model=JobPostOut, status_code=http_status.HTTP_201_CREATED)
async def create_job_post(
    payload: JobPostCreateRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> JobPostOut:
    account_id = require_principal_scopes(principal, {"job_posts:write"})
    try:
        row = await submit_job_post(repository, author_id=account_id, fields=payload.model_dump())
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return JobPostOut(**row)


@router.post("/{job_post_id}/approve", response_model=JobPostApprovalOut)
async def approve_post(
    job_post_id: str,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> JobPostApprovalOut:
    moderator_id = require_principal_scopes(principal, {"moderation:write"})
    try:
        result = await approve_job_post(repository, job_post_id=job_post_id, moderator_id=moderator_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobPostApprovalOut(**result.job_post, author_entitled=result.author_entitled)


@router.post("/{job_post_id}/reject", response_model=JobPostOut)
async def reject_post(
    job_post_id: str,
    payload: JobPostRejectRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> JobPostOut:
    moderator_id = require_principal_scopes(principal, {"moderation:write"})
    try:
        row = await reject_job_post(
            repository,
            job_post_id=job_post_id,
            moderator_id=moderator_id,
            reason=payload.reason,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobPostOut(**row)
