from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

JobPostStatus = Literal["draft", "pending", "published"]


class JobPostCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    location: str | None = None
    job_type: str | None = None
    salary_range: str | None = None


class JobPostRejectRequest(BaseModel):
    reason: str = Field(min_length=1)


class JobPostOut(BaseModel):
    id: str
    author_id: str
    title: str
    description: str
    location: str | None = None
    job_type: str | None = None
    salary_range: str | None = None
    status: JobPostStatus
    published_at: datetime | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    moderation_notes: str | None = None
    created_at: datetime
    updated_at: datetime


class JobPostApprovalOut(JobPostOut):
    author_entitled: bool
