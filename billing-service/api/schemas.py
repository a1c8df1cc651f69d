"""
Pydantic schemas for API responses
"""

from pydantic import BaseModel, Field
from typing import Dict, Optional


class WebhookAcknowledgement(BaseModel):
    """Response returned to Stripe for an accepted delivery"""

    received: bool = Field(default=True, description="Delivery was verified and accepted")
    duplicate: Optional[bool] = Field(
        None, description="Event id was already processed; handler not run again"
    )


class DependencyCheck(BaseModel):
    status: str
    message: str


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    service: str
    version: str
    timestamp: str
    request_id: Optional[str] = None
    checks: Dict[str, DependencyCheck] = Field(default_factory=dict)
