"""
Database Schemas for the Student Suggestion Box

Define the document schemas stored in the record store using Pydantic models.
Suggestions live under artifacts/{app_id}/suggestions, user profiles (with
their vote ledger) under artifacts/{app_id}/users.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

CATEGORIES = [
    "Academics & Curriculum",
    "Campus Facilities & Maintenance",
    "Technology & IT",
    "Student Support Services",
    "Food & Dining",
    "Safety & Security",
    "Other",
]

TERMINAL_STATUSES = ("Solved", "Closed")

SortOrder = Literal["votes", "newest", "oldest", "solved", "unsolved"]
SortColumn = Literal["title", "category", "priority", "status", "is_public", "upvotes", "created_at"]
SortDirection = Literal["asc", "desc"]
VoteDirection = Literal["up", "down"]


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def _unique_tags(tags: List[str]) -> List[str]:
    seen: List[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class Comment(BaseModel):
    user_id: str = Field(..., description="Public id of the commenter")
    text: str = Field(..., description="Comment body")
    timestamp: str = Field(..., description="UTC ISO-8601 timestamp of creation")


class Suggestion(BaseModel):
    """
    Suggestions submitted by students
    Path: artifacts/{app_id}/suggestions/{id}
    """
    id: Optional[str] = Field(None, description="Store-assigned document id")
    title: str = Field(..., description="Suggestion title")
    description: str = Field(..., description="Markdown body")
    summary: str = Field("", description="Short or AI-generated summary")
    tags: List[str] = Field(default_factory=list, description="Topic tags, display order")
    category: str = Field("Other", description="One of CATEGORIES")
    priority: str = Field("Undefined", description="Triage priority")
    status: str = Field("Pending", description="Moderation status")
    solved: bool = Field(False, description="Derived: status is terminal")
    upvotes: int = Field(0, ge=0)
    downvotes: int = Field(0, ge=0)
    comments: List[Comment] = Field(default_factory=list)
    comment_count: int = Field(0, ge=0, description="Derived: len(comments)")
    attachments: List[str] = Field(default_factory=list)
    is_public: bool = Field(True, description="Visible in the public listing")
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    resolved_at: Optional[str] = Field(None, description="Derived: first entry into a terminal status")
    user_id: str = Field(..., description="Public id of the author")

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


class SuggestionCreate(BaseModel):
    title: str
    description: str
    category: str
    tags: List[str] = []
    attachments: List[str] = []
    is_public: bool = True

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: List[str]) -> List[str]:
        return _unique_tags(v)


class SuggestionEdit(BaseModel):
    """Fields a moderator may change from the admin grid."""
    title: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    is_public: Optional[bool] = None


class BulkSaveRow(SuggestionEdit):
    id: str


class BulkSaveFailure(BaseModel):
    id: str
    error: str


class BulkSaveResult(BaseModel):
    saved: List[str] = Field(default_factory=list)
    failures: List[BulkSaveFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class VoteLedger(BaseModel):
    """Suggestion ids a viewer has voted on. A given id is in at most one list."""
    upvoted: List[str] = Field(default_factory=list)
    downvoted: List[str] = Field(default_factory=list)


class UserProfile(BaseModel):
    """
    Registered students
    Path: artifacts/{app_id}/users/{owner_id}
    """
    owner_id: str = Field(..., description="Stable internal identity")
    public_id: str = Field(..., description="Identifier shown on suggestions and comments")
    prn: str = Field(..., description="Institution student id")
    internal_email: str
    password_hash: str
    is_banned: bool = False
    created_at: str = Field(default_factory=utc_now_iso)
    upvoted: List[str] = Field(default_factory=list)
    downvoted: List[str] = Field(default_factory=list)

    def ledger(self) -> VoteLedger:
        return VoteLedger(upvoted=list(self.upvoted), downvoted=list(self.downvoted))


class UserProfileOut(BaseModel):
    owner_id: str
    public_id: str
    prn: str
    is_banned: bool
    created_at: str


class Viewer(BaseModel):
    """The acting identity, passed explicitly into every write operation."""
    logged_in: bool = False
    owner_id: Optional[str] = None
    public_id: Optional[str] = None
    is_banned: bool = False
    is_moderator: bool = False

    @classmethod
    def anonymous(cls) -> "Viewer":
        return cls()

    @property
    def can_write(self) -> bool:
        return self.logged_in and not self.is_banned


class ProjectionCriteria(BaseModel):
    search: str = ""
    tag: str = "All"
    category: str = "All"
    sort_order: SortOrder = "newest"


class AdminSortState(BaseModel):
    column: SortColumn = "created_at"
    direction: SortDirection = "desc"


class SuggestionSummaryRow(BaseModel):
    """Row on a student's profile page."""
    post_id: str
    title: str
    summary: str
    created_at: str
    upvotes: int = 0
    comment_count: int = 0
