"""
API response schemas for the webhook and status endpoints.
"""
from typing import Any, Optional
from pydantic import BaseModel


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    status: str = "error"
    error: ErrorDetail
    timestamp: str


class WalletSummary(BaseModel):
    stored: bool
    outcome: str
    recordId: Optional[str] = None
    namespace: Optional[str] = None
    error: Optional[str] = None


class SyncSuccessResponse(BaseModel):
    status: str = "success"
    requestId: str
    message: str
    data: dict[str, Any]
    wallet: WalletSummary
    timestamp: str


class ProcessingInfo(BaseModel):
    status: str
    estimatedDuration: str
    callbackUrl: str


class AcceptedResponse(BaseModel):
    status: str = "accepted"
    requestId: str
    message: str
    processing: ProcessingInfo
    timestamp: str


class RequestStatusView(BaseModel):
    requestId: str
    status: str
    createdAt: str
    completedAt: Optional[str] = None
    duration: int
    hasCallback: bool
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class StatusResponse(BaseModel):
    status: str = "success"
    data: RequestStatusView
    timestamp: str


class TestCallbackResponse(BaseModel):
    __test__ = False

    status: str
    data: dict[str, Any]
    timestamp: str
