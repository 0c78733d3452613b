"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel
from typing import Optional, List


class AuthUrlResponse(BaseModel):
    url: str


class ConnectionStatus(BaseModel):
    connected: bool
    needs_reconnect: bool = False


class JobEventResponse(BaseModel):
    message_id: str
    subject: str
    snippet: str
    company: str
    title: str
    status: str  # applied, rejected
    applied_date: Optional[datetime] = None
    source: str = "gmail"
    link: str

    class Config:
        from_attributes = True


class ScanResponse(BaseModel):
    events: List[JobEventResponse]
    count: int
    next_page_token: str = ""


class SyncStatusResponse(BaseModel):
    is_syncing: bool
    initial_sync_completed: bool
    total_imported: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    message: str
