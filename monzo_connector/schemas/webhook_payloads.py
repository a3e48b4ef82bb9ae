"""
Webhook payload schemas - raw input from the gateway.
Field names follow the gateway's wire format.
"""
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ConnectRequest(BaseModel):
    """POST /webhook/connect body."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    data: Optional[str] = None  # user identifier, e.g. email
    is_async: bool = Field(default=False, alias="async")
    callback_url: Optional[str] = None
    token: Optional[str] = None  # alternative to the Authorization header


class TestCallbackRequest(BaseModel):
    """POST /webhook/test-callback body."""
    __test__ = False  # not a pytest test class

    url: Optional[str] = None
