"""Request/response models for the HTTP API."""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field

MAX_BATCH_SIZE = 20


class SubmitRequest(BaseModel):
    """Either a single `url` or a list of `urls`."""
    url: Optional[str] = None
    urls: Optional[List[str]] = None
    user_id: Optional[str] = None

    def url_list(self) -> List[str]:
        if self.urls:
            return [u.strip() for u in self.urls if u and u.strip()]
        if self.url and self.url.strip():
            return [self.url.strip()]
        return []


class SubmitResult(BaseModel):
    url: str
    item_id: Optional[int] = None
    instance_id: Optional[str] = None
    title: Optional[str] = None
    already_exists: Optional[bool] = None
    error: Optional[str] = None


class SubmitResponse(BaseModel):
    success: bool
    results: List[SubmitResult]


class TriggerRequest(BaseModel):
    item_ids: List[int] = Field(..., min_length=1)
    triggered_by: str = "manual"


class TriggerResponse(BaseModel):
    queued: int


class WorkflowStatusResponse(BaseModel):
    status: str
    item: Optional[Dict[str, Any]] = None


class RunResponse(BaseModel):
    status: str
    message: str
    stats: Dict[str, Any]


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
