from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any


@dataclass
class Message:
    id: str
    folder_key: str
    sender_name: str = ""
    sender_address: str = ""
    subject: str = ""
    preview: str = ""
    received_at: str | None = None
    is_read: bool = False
    is_flagged: bool = False
    has_attachments: bool = False
    importance: str = "normal"
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class Folder:
    id: str
    key: str
    display_name: str
    unread_count: int = 0
    total_count: int = 0
    is_system: bool = False
    folder_type: str = "custom"


@dataclass
class Contact:
    email: str
    name: str = ""
    phone: str = ""
    company: str = ""
    position: str = ""
    location: str = ""
    status: str = "lead"
    last_interaction: datetime | None = None
    deal_value: float = 0
    tags: set[str] = field(default_factory=set)
    provenance: set[str] = field(default_factory=set)
    notes: str = ""
    provider_id: str = ""


@dataclass
class SyncStatus:
    owner: str
    last_full_sync_at: datetime | None = None
    last_incremental_sync_at: datetime | None = None
    next_sync_due_at: datetime | None = None
    sync_enabled: bool = True
    sync_interval_minutes: int = 15
    last_sync_duration_ms: int | None = None
    last_sync_error: str | None = None
    total_emails_cached: int = 0
    total_folders_cached: int = 0

    def is_due(self, now: datetime) -> bool:
        if not self.sync_enabled:
            return False
        if self.next_sync_due_at is None:
            return True
        return now >= self.next_sync_due_at

    def mark_finished(self, finished_at: datetime, duration_ms: int, error: str | None = None, full=True):
        if error is None:
            if full:
                self.last_full_sync_at = finished_at
            else:
                self.last_incremental_sync_at = finished_at
        self.next_sync_due_at = finished_at + timedelta(minutes=self.sync_interval_minutes)
        self.last_sync_duration_ms = duration_ms
        self.last_sync_error = error


@dataclass
class CacheSnapshot:
    """In-memory view served to consumers. ``fetched_at`` is epoch seconds, 0 when never fetched."""

    emails: list[Message] = field(default_factory=list)
    folders: list[Folder] = field(default_factory=list)
    contacts: list[Contact] = field(default_factory=list)
    fetched_at: float = 0
    is_loading: bool = False
    last_error: str | None = None

    def age(self, now: float) -> float:
        if not self.fetched_at:
            return float("inf")
        return max(0.0, now - self.fetched_at)

    def is_stale(self, ttl: float, now: float) -> bool:
        return self.age(now) >= ttl
