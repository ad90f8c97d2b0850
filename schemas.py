"""
Database Schemas for the Task Manager

Each Pydantic model represents a MongoDB collection. The collection name is
lowercased from the class name, e.g. Task -> "task". Field names are the
camelCase keys the web client reads and writes.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

# Vocabularies
PREDEFINED_CATEGORIES = [
    "Design",
    "Development",
    "Backend",
    "Frontend",
    "Testing",
    "Security",
    "DevOps",
    "Database",
    "API",
    "Documentation",
    "Research",
    "Maintenance",
    "Other",
]

TaskStatus = Literal["To Do", "In Progress", "Done", "Cancelled"]
TASK_STATUSES: List[str] = ["To Do", "In Progress", "Done", "Cancelled"]
OPEN_STATUSES: List[str] = ["To Do", "In Progress"]

Priority = Literal["high", "medium", "low"]
PRIORITIES: List[str] = ["high", "medium", "low"]

NotificationType = Literal[
    "success", "error", "profile", "task", "message", "reminder",
    "mention", "settings", "friend", "update", "info",
]

# Spellings seen from older clients and chat input, keyed without spaces/-/_
STATUS_ALIASES = {
    "todo": "To Do",
    "inprogress": "In Progress",
    "doing": "In Progress",
    "done": "Done",
    "complete": "Done",
    "completed": "Done",
    "finish": "Done",
    "finished": "Done",
    "cancelled": "Cancelled",
    "canceled": "Cancelled",
    "cancled": "Cancelled",
}


def normalize_status(value: str) -> str:
    key = "".join(ch for ch in str(value).lower() if ch not in " -_")
    if key not in STATUS_ALIASES:
        raise ValueError(f"Invalid status. Please use one of: {', '.join(TASK_STATUSES)}")
    return STATUS_ALIASES[key]


def normalize_priority(value: str) -> str:
    cleaned = str(value).strip().lower()
    if cleaned not in PRIORITIES:
        raise ValueError(f"Invalid priority. Please use one of: {', '.join(PRIORITIES)}")
    return cleaned


def normalize_category(value: str) -> str:
    """Predefined categories keep their canonical casing; custom ones pass through."""
    cleaned = str(value).strip()
    if not cleaned:
        raise ValueError("Invalid category. Must be either a predefined category or a non-empty custom category.")
    for category in PREDEFINED_CATEGORIES:
        if category.lower() == cleaned.lower():
            return category
    return cleaned


# Tasks
class TaskFields(BaseModel):
    """Shared validation for stored tasks and task request bodies."""

    @field_validator("title", check_fields=False)
    @classmethod
    def _title(cls, v):
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        return v

    @field_validator("description", check_fields=False)
    @classmethod
    def _description(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("category", check_fields=False)
    @classmethod
    def _category(cls, v):
        return normalize_category(v) if v is not None else v

    @field_validator("status", mode="before", check_fields=False)
    @classmethod
    def _status(cls, v):
        return normalize_status(v) if v is not None else v

    @field_validator("priority", mode="before", check_fields=False)
    @classmethod
    def _priority(cls, v):
        return normalize_priority(v) if v is not None else v


class Task(TaskFields):
    title: str
    description: str = ""
    category: str
    startDate: datetime
    dueDate: datetime
    priority: Priority = "medium"
    status: TaskStatus = "To Do"
    pinned: bool = False
    favorite: bool = False
    validation: bool = False
    cancelled: bool = False
    manual: bool = False
    user: str = Field(..., description="Owning user id")


# Users
class NotificationSettings(BaseModel):
    taskNotifs: bool = True
    taskReminders: bool = True
    errorNotifs: bool = True
    successNotifs: bool = True
    settingsNotifs: bool = True
    updateNotifs: bool = True
    profileNotifs: bool = True


class User(BaseModel):
    fullName: str
    job: str
    email: EmailStr = Field(..., description="Unique email")
    password: str = Field(..., description="bcrypt hash; never returned in responses")
    phoneNumber: str = ""
    languages: str = "English"
    location: str = ""
    about: str = ""
    skills: List[str] = Field(default_factory=list)
    profileImage: Optional[str] = None
    bannerImage: Optional[str] = None
    joinedDate: datetime
    resetPasswordToken: Optional[str] = None
    resetPasswordExpires: Optional[datetime] = None
    notificationSettings: NotificationSettings = Field(default_factory=NotificationSettings)


# Conversations
class Message(BaseModel):
    sender: Literal["user", "bot"]
    message: str
    timestamp: datetime


class Conversation(BaseModel):
    title: str = "New Chat"
    user: str
    favorite: bool = False
    messages: List[Message] = Field(default_factory=list)


# Notifications
class Notification(BaseModel):
    userId: str
    title: str
    message: str
    type: NotificationType = "info"
    read: bool = False
    timestamp: datetime
