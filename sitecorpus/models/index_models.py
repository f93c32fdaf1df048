"""Models for semantic index documents and upload operations."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class DocumentState(str, Enum):
    """Acceptance state of an uploaded document."""

    PROCESSING = "processing"
    ACTIVE = "active"
    FAILED = "failed"


class DocumentMetadata(BaseModel):
    """Metadata attached to an uploaded page."""

    url: str = Field(..., description="Page URL")
    title: str | None = Field(default=None, description="Page title")
    path: str | None = Field(default=None, description="URL path")
    updated_at: datetime | None = Field(default=None, description="Last capture time")


@dataclass
class OperationResult:
    """Outcome of polling an upload operation."""

    operation_id: str
    state: DocumentState
    document_id: str | None = None
    error: str | None = None
