"""
Pydantic schemas for request/response validation
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DownloadRequest(BaseModel):
    """Request model for POST /download"""
    # Optional so a missing URL is reported as 400 by the route, not 422
    url: Optional[str] = Field(None, description="YouTube video or playlist URL")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
            }
        }
    )


class ErrorResponse(BaseModel):
    """Error body returned for every failed request"""
    error: str = Field(..., description="Error message")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "URL must be a YouTube link."
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    version: str
