# sitenotify/transport/schemas.py
from typing import Any

from pydantic import BaseModel, Field


class CreateBatchJobIn(BaseModel):
    kind: str = Field(min_length=1, max_length=64)
    recipients: list[Any] = Field(default_factory=list)
    language: str | None = Field(default=None, max_length=16)
    login_url: str | None = Field(default=None, max_length=2048)


class CreateBatchJobOut(BaseModel):
    success: bool = True
    jobId: str


class SuccessOut(BaseModel):
    success: bool = True
