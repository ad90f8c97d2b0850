import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import ValidationError
from pymongo import ASCENDING
from pymongo.database import Database

from database import as_utc, get_db, now_utc, oid, owned_by, serialize
from errors import ApiError
from notifications import notify
from schemas import OPEN_STATUSES, TASK_STATUSES, Task, TaskFields
from security import CurrentUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

BOARD_COLUMNS = TASK_STATUSES + ["Pinned"]
DUE_SOON_DAYS = 3
PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}
SORT_FIELDS = {"dueDate", "createdAt", "priority", "title", "startDate"}


# -----------------------------
# Helpers (shared with the chatbot)
# -----------------------------
def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / 86400)


def task_view(doc: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Serialized task plus the derived `timeRemaining` / `daysLeft` day counts."""
    now = now or now_utc()
    out = serialize(doc)
    due = as_utc(doc.get("dueDate"))
    start = as_utc(doc.get("startDate"))
    out["timeRemaining"] = _ceil_days(due - start) if due and start else None
    out["daysLeft"] = _ceil_days(due - now) if due else None
    return out


def is_overdue(doc: Dict[str, Any], now: datetime) -> bool:
    due = as_utc(doc.get("dueDate"))
    return bool(due) and due < now and doc.get("status") in OPEN_STATUSES


def insert_task(db: Database, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate against the Task schema and store it. Raises ApiError(400)."""
    stamp = now_utc()
    data = {"startDate": stamp, **{k: v for k, v in data.items() if v is not None}}
    try:
        task = Task(user=str(user_id), **data)
    except ValidationError as e:
        raise ApiError(400, _validation_message(e))
    doc = task.model_dump()
    doc.update({"user": oid(user_id), "cancelled": task.cancelled or task.status == "Cancelled",
                "createdAt": stamp, "updatedAt": stamp})
    res = db["task"].insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def apply_task_update(db: Database, task: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    fields = dict(fields)
    if "status" in fields and "cancelled" not in fields:
        fields["cancelled"] = fields["status"] == "Cancelled"
    fields["updatedAt"] = now_utc()
    db["task"].update_one({"_id": task["_id"]}, {"$set": fields})
    return db["task"].find_one({"_id": task["_id"]})


def get_owned_task(db: Database, user_id: str, task_id: str) -> Dict[str, Any]:
    task = db["task"].find_one({"_id": oid(task_id), **owned_by("user", user_id)})
    if not task:
        raise ApiError(404, "Task not found")
    return task


def find_task_by_title(db: Database, user_id: str, title: str, exact: bool = True) -> Optional[Dict[str, Any]]:
    """Case-insensitive title lookup; `exact=False` matches a substring."""
    pattern = re.escape(title.strip())
    if exact:
        pattern = f"^{pattern}$"
    return db["task"].find_one({"title": {"$regex": pattern, "$options": "i"}, **owned_by("user", user_id)})


def similar_tasks(db: Database, user_id: str, title: str, limit: int = 3) -> List[Dict[str, Any]]:
    words = title.split()
    if not words:
        return []
    query = {"title": {"$regex": re.escape(words[0]), "$options": "i"}, **owned_by("user", user_id)}
    return list(db["task"].find(query).limit(limit))


def _validation_message(e: ValidationError) -> str:
    err = e.errors()[0]
    msg = err.get("msg", "Invalid task data")
    return msg.removeprefix("Value error, ")


# -----------------------------
# Request bodies
# -----------------------------
class TaskCreate(TaskFields):
    title: str
    description: Optional[str] = ""
    category: str
    startDate: Optional[datetime] = None
    dueDate: datetime
    priority: Optional[str] = "medium"
    status: Optional[str] = "To Do"
    pinned: bool = False
    favorite: bool = False
    validation: bool = False
    cancelled: bool = False
    manual: bool = True


class TaskUpdate(TaskFields):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    startDate: Optional[datetime] = None
    dueDate: Optional[datetime] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    pinned: Optional[bool] = None
    favorite: Optional[bool] = None
    validation: Optional[bool] = None
    cancelled: Optional[bool] = None


class StatusMove(TaskFields):
    status: str


# -----------------------------
# Task endpoints
# -----------------------------
@router.get("")
async def list_tasks(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    category: Optional[str] = None,
    pinned: Optional[bool] = None,
    favorite: Optional[bool] = None,
    search: Optional[str] = Query(None, max_length=200),
    sort: str = "-createdAt",
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = owned_by("user", user.user_id)
    try:
        if status:
            query["status"] = StatusMove(status=status).status
    except ValidationError:
        raise ApiError(400, f"Invalid status. Please use one of: {', '.join(TASK_STATUSES)}")
    if priority:
        query["priority"] = priority.lower()
    if category:
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if pinned is not None:
        query["pinned"] = pinned
    if favorite is not None:
        query["favorite"] = favorite
    if search:
        query["title"] = {"$regex": re.escape(search), "$options": "i"}

    field = sort.lstrip("-")
    if field not in SORT_FIELDS:
        raise ApiError(400, f"Invalid sort field: {field}")
    reverse = sort.startswith("-")

    docs = list(db["task"].find(query))
    if field == "priority":
        docs.sort(key=lambda t: PRIORITY_RANK.get(t.get("priority"), 1), reverse=reverse)
    elif field == "title":
        docs.sort(key=lambda t: (t.get("title") or "").lower(), reverse=reverse)
    else:
        floor = datetime.min.replace(tzinfo=now_utc().tzinfo)
        docs.sort(key=lambda t: as_utc(t.get(field)) or floor, reverse=reverse)
    now = now_utc()
    return {"state": True, "tasks": [task_view(t, now) for t in docs]}


@router.get("/board")
async def board(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    columns: Dict[str, List[Dict[str, Any]]] = {name: [] for name in BOARD_COLUMNS}
    now = now_utc()
    for t in db["task"].find(owned_by("user", user.user_id)).sort("createdAt", ASCENDING):
        column = "Pinned" if t.get("pinned") else t.get("status")
        if column not in columns:
            logger.warning("Skipping task %s with unknown status %r", t["_id"], t.get("status"))
            continue
        columns[column].append(task_view(t, now))
    return {"state": True, "columns": columns}


@router.get("/stats")
async def stats(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    now = now_utc()
    soon = now + timedelta(days=DUE_SOON_DAYS)
    by_status = {s: 0 for s in TASK_STATUSES}
    by_priority = {"high": 0, "medium": 0, "low": 0}
    overdue = due_soon = favorites = pinned = total = 0
    for t in db["task"].find(owned_by("user", user.user_id)):
        total += 1
        if t.get("status") in by_status:
            by_status[t["status"]] += 1
        if t.get("priority") in by_priority:
            by_priority[t["priority"]] += 1
        favorites += bool(t.get("favorite"))
        pinned += bool(t.get("pinned"))
        if is_overdue(t, now):
            overdue += 1
        elif t.get("status") in OPEN_STATUSES and as_utc(t.get("dueDate")) and as_utc(t["dueDate"]) <= soon:
            due_soon += 1
    return {
        "state": True,
        "stats": {
            "total": total,
            "byStatus": by_status,
            "byPriority": by_priority,
            "overdue": overdue,
            "dueSoon": due_soon,
            "favorites": favorites,
            "pinned": pinned,
        },
    }


@router.post("", status_code=201)
async def create_task(body: TaskCreate, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = insert_task(db, user.user_id, body.model_dump())
    logger.info("Task %s created by %s", doc["_id"], user.user_id)
    notify(db, user.user_id, "New Task Created", f"Task \"{doc['title']}\" has been created", "task", setting="taskNotifs")
    return {"state": True, "message": "Task created successfully", "task": task_view(doc)}


@router.get("/{task_id}")
async def get_task(task_id: str, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"state": True, "task": task_view(get_owned_task(db, user.user_id, task_id))}


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    task = get_owned_task(db, user.user_id, task_id)
    fields = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    if not fields:
        return {"state": True, "message": "Nothing to update", "task": task_view(task)}
    updated = apply_task_update(db, task, fields)
    notify(db, user.user_id, "Task Updated", f"Task \"{updated['title']}\" has been updated", "update", setting="taskNotifs")
    return {"state": True, "message": "Task updated successfully", "task": task_view(updated)}


@router.patch("/{task_id}/status")
async def move_task(
    task_id: str,
    body: StatusMove,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    task = get_owned_task(db, user.user_id, task_id)
    updated = apply_task_update(db, task, {"status": body.status})
    return {"state": True, "message": f"Task moved to {body.status}", "task": task_view(updated)}


@router.put("/{task_id}/archive")
async def archive_task(task_id: str, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    task = get_owned_task(db, user.user_id, task_id)
    updated = apply_task_update(db, task, {"status": "Cancelled", "cancelled": True})
    notify(db, user.user_id, "Task Archived", f"Task \"{updated['title']}\" has been archived", "info", setting="taskNotifs")
    return {"state": True, "message": "Task archived successfully", "task": task_view(updated)}


@router.delete("/{task_id}")
async def delete_task(task_id: str, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    task = get_owned_task(db, user.user_id, task_id)
    db["task"].delete_one({"_id": task["_id"]})
    logger.info("Task %s deleted by %s", task["_id"], user.user_id)
    notify(db, user.user_id, "Task Deleted", f"Task \"{task['title']}\" has been deleted", "task", setting="taskNotifs")
    return {"state": True, "message": "Task deleted successfully"}
