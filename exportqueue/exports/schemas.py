### exportqueue/exports/schemas.py

"""
Pydantic schemas for export API requests and responses.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from exportqueue.exports.models import ExportStatus
from exportqueue.exports.sources import ListReference


class ExportRequest(BaseModel):
    """Request schema for creating an export job"""

    list_ref: ListReference = Field(
        ...,
        description="Source name plus the filters and sort currently applied to the list"
    )

    columns: Optional[Dict[str, str]] = Field(
        None,
        description="Ordered map of field name to column title; omit to export every field"
    )

    separator: str = Field(",", description="Single separator character")

    include_header: bool = Field(True, description="Write a header row first")

    class Config:
        json_schema_extra = {
            "example": {
                "list_ref": {
                    "source": "export_jobs",
                    "filters": {"status": "FINISHED"},
                    "sort": ["-created_at"]
                },
                "columns": {"signature": "Signature", "total_steps": "Rows"},
                "separator": ",",
                "include_header": True
            }
        }


class ExportResponse(BaseModel):
    """Response schema for export job creation"""

    signature: str = Field(..., description="Opaque export job identifier")

    status: ExportStatus = Field(..., description="Current status of export job")

    message: str = Field(..., description="User-friendly status message")

    status_url: str = Field(..., description="URL to poll for progress")


class JobView(BaseModel):
    """Status of one export job as shown to its owner"""

    id: str = Field(..., description="Export job signature")

    status: ExportStatus = Field(..., description="Current status")

    steps_processed: int = Field(..., ge=0)

    total_steps: int = Field(..., ge=0)

    elapsed_seconds: Optional[int] = Field(
        None,
        description="Seconds since processing started"
    )

    remaining_seconds: Optional[int] = Field(
        None,
        description="Estimated seconds left; absent until the first page is done"
    )

    has_file: bool = Field(False, description="Whether the export file can still be downloaded")

    download_link: Optional[str] = Field(None, description="One-time download URL")

    error_message: Optional[str] = Field(
        None,
        description="Why the export cannot be downloaded"
    )

    link: str = Field(..., description="URL of this status view")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "3f2a9c0d5b1e4f7a8c6d2e0b9a1f3c5d7e9b0a2c",
                "status": "PROCESSING",
                "steps_processed": 1500,
                "total_steps": 15432,
                "elapsed_seconds": 30,
                "remaining_seconds": 279,
                "has_file": False,
                "download_link": None,
                "error_message": None,
                "link": "/api/exports/3f2a9c0d5b1e4f7a8c6d2e0b9a1f3c5d7e9b0a2c"
            }
        }


class ExportListItem(BaseModel):
    """Schema for a single export in list view"""

    id: str
    status: ExportStatus
    steps_processed: int
    total_steps: int
    created_at: datetime
    last_updated_at: datetime


class PaginatedExportListResponse(BaseModel):
    """Response schema for paginated export list"""

    items: list[ExportListItem] = Field(..., description="List of exports")

    total_items: int = Field(..., description="Total number of exports")

    page: int = Field(..., description="Current page number")

    per_page: int = Field(..., description="Items per page")

    total_pages: int = Field(..., description="Total number of pages")
