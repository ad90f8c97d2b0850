"""
Conversational task assistant.

Messages are routed by an ordered cascade of regular expressions; only
when none of them applies is Gemini asked to classify the intent. Tasks the
assistant proposes are held as per-user drafts in a process-local store
until the user confirms them (yes/no), and drafts expire ten minutes after
they were last touched. Expiry is checked lazily when a draft is read.
"""
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Depends
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import as_utc, get_db, now_utc, owned_by
from errors import ApiError
from gemini import GeminiClient, GeminiError, get_llm
from notifications import notify
from schemas import TASK_STATUSES, normalize_category, normalize_priority, normalize_status
from tasks import apply_task_update, find_task_by_title, insert_task, similar_tasks, task_view

logger = logging.getLogger(__name__)

DRAFT_TTL_SECONDS = 600
DEFAULT_DUE_DAYS = 3
RULE = "━" * 40

INTENTS = ["create task", "update task", "delete task", "list tasks", "view task", "chat"]
GENERAL_CONVERSATION = "general_conversation"


class ChatbotError(Exception):
    """The assistant could not work out what to do with a message."""


# -----------------------------
# Patterns
# -----------------------------
FIELD_UPDATE_PATTERN = re.compile(r"^(title|status|priority|category|description|due date)\s*:\s*(.+)$", re.I)

DELETE_PATTERNS = [
    re.compile(r"^delete\s+task\s*:\s*(.+)", re.I),
    re.compile(r"^delete\s*:\s*(.+)", re.I),
    re.compile(r"^delete\s+task\s+(.+)", re.I),
    re.compile(r"^remove\s+task\s*:\s*(.+)", re.I),
    re.compile(r"^remove\s*:\s*(.+)", re.I),
    re.compile(r"^remove\s+task\s+(.+)", re.I),
    re.compile(r"^remove\((.+)\)", re.I),
    re.compile(r"^delete\((.+)\)", re.I),
    re.compile(r"^remove\s+(.+)", re.I),
    re.compile(r"^delete\s+(.+)", re.I),
]

CREATE_PATTERNS = [
    re.compile(r"^(?:create|add|make)(?:\s+a)?\s+task\s*:\s*(.+)", re.I),
    re.compile(r"^(?:create|add|make)(?:\s+a)?\s+task\s+([^:,]+)", re.I),
]

GENERAL_PATTERNS = [
    re.compile(r"^(hi|hello|hey|greetings)\b", re.I),
    re.compile(r"^(how are you|how's it going)", re.I),
    re.compile(r"start.*conversation", re.I),
    re.compile(r"^[a-z]$", re.I),
]

UPDATE_TITLE_PATTERNS = [
    re.compile(r"^update\s+task\s*:\s*(.+?)(?:\s*,|\s*$)", re.I),
    re.compile(r"^update\s*:\s*(.+?)(?:\s*,|\s*$)", re.I),
    re.compile(r"^update\s+my\s+task\s+(.+?)(?:\s*,|\s*$)", re.I),
    re.compile(r"^update\s+task\s+(.+?)(?:\s*,|\s*$)", re.I),
    re.compile(r"^update\s+this\s+(.+?)(?:\s*,|\s*$)", re.I),
    re.compile(r"^edit\s+(?:task\s*:?\s*)?(.+?)(?:\s*,|\s*$)", re.I),
    re.compile(r"^update\s+(.+?)(?:\s*,|\s*$)", re.I),
]

TASK_AND_FIELD_PATTERN = re.compile(r"^update\s+task\s*:\s*([^,]+),\s*(?:set\s+|change\s+)?(\w+(?:\s+\w+)?)\s*(?::|\s+to:?)\s*(.+)$", re.I)
FIELD_SET_PATTERNS = [
    re.compile(r"^(?:set|change|update)\s+(\w+(?:\s+\w+)?)\s+(?:to|as):?\s*(.+)$", re.I),
    re.compile(r"^(\w+(?:\s+\w+)?)\s*:\s*(.+)$", re.I),
]
RENAME_PATTERN = re.compile(r"^rename\s+(?:task|it)\s+to:?\s*(.+)$", re.I)

VIEW_PATTERNS = [
    re.compile(r"^(?:view|show|open|display)\s+(?:me\s+)?(?:the\s+)?task\s*:?\s*\"?([^\"]+?)\"?\s*$", re.I),
    re.compile(r"^(?:details\s+(?:of|for)|what\s+is)\s+(?:the\s+)?task\s*:?\s*\"?([^\"]+?)\"?\s*\??$", re.I),
]

CONTEXT_DELETE_PATTERNS = [
    re.compile(r"(?:delete|remove|erase|cancel|clear|trash|bin)\s+(?:the\s+)?(?:task|todo|to-do|item|reminder|activity)\s*[\":]\s*\"?([^\",]+)\"?", re.I),
    re.compile(r"(?:delete|remove|erase|cancel|clear|trash|bin)\s+(?:the\s+)?(?:task|todo|to-do|item|reminder|activity)\s+(?:called|named|titled|labeled)\s+\"?([^\",]+)\"?", re.I),
    re.compile(r"(?:get\s+rid\s+of|eliminate|wipe\s+out|throw\s+away|dispose\s+of)\s+(?:the\s+)?(?:task|todo|to-do|item|reminder|activity)\s+\"?([^\",]+)\"?", re.I),
    re.compile(r"(?:i\s+want\s+to|i'd\s+like\s+to)\s+(?:delete|remove)\s+(?:the\s+)?(?:task|todo|to-do|item)\s+\"?([^\",]+)\"?", re.I),
]
HISTORY_TASK_PATTERNS = [
    re.compile(r"task \"([^\"]+)\"", re.I),
    re.compile(r"^Title:\s*(.+)$", re.I | re.M),
    re.compile(r"task:\s*([^,\n]+)", re.I),
]

NEW_TITLE_PATTERNS = [
    re.compile(r"^title\s*:\s*(.+)$", re.I),
    re.compile(r"^title\s+is\s+(.+)$", re.I),
    re.compile(r"^my\s+title\s+is\s+(.+)$", re.I),
    re.compile(r"^new\s+title\s*:\s*(.+)$", re.I),
    re.compile(r"^(.+)$"),
]

CONFIRM_PATTERN = re.compile(r"^(yes|ok|confirm|y)$", re.I)
REJECT_PATTERN = re.compile(r"^(no|cancel|reject|n)$", re.I)

PRIORITY_HINT = re.compile(r"\b(high|medium|low)\s+priority\b|\bpriority\s*(?:is|of|:)?\s*(high|medium|low)\b", re.I)
DUE_HINT = re.compile(r"\bdue\s*(?:date)?\s*(?:is|on|:)?\s*([^,]+)", re.I)
CATEGORY_HINT = re.compile(r"\bcategory\s*(?:is|:)?\s*([A-Za-z][\w ]*)", re.I)


# -----------------------------
# Canned replies
# -----------------------------
NO_TASKS = """📝 You don't have any tasks yet!

Would you like to create your first task? Just say something like:
• "Create a new task"
• "Add task: [your task title]"
• "Create task: [task title] with priority high"

I'll help you organize and track your tasks effectively! 🚀"""

CREATE_HELP = """I'll help you create a new task! 🎯

To create a task effectively, please provide some details:
• What's the title or main objective of the task?
• When does it need to be completed?
• What priority level would you assign (high/medium/low)?
• Any specific category (Development/Design/Testing/etc)?

You can provide these details all at once like:
"Create task: Build login page, high priority, due next week"

Or just tell me the task title and I'll help you fill in the rest! What would you like to create?"""

UPDATE_HELP = """I'll help you update your tasks! 🔄

To update a task, please let me know:
• Which task do you want to update? (the task title)
• What would you like to change?

You can update:
• Status (To Do, In Progress, Done, Cancelled)
• Priority (high/medium/low)
• Category
• Due Date
• Description

For example:
• "Update task: Frontend Design, status: In Progress"
• "Update task: Database Setup, priority: high"

First, which task would you like to update?"""

UPDATE_FIELDS_HELP = """What would you like to update? You can:

1. Update the status: "Set status to: [To Do/In Progress/Done/Cancelled]"
2. Change the priority: "Set priority to: [High/Medium/Low]"
3. Modify the category: "Set category to: [Development/Design/Testing/Other]"
4. Update the due date: "Set due date to: [date]"
5. Change the title: "Rename task to: [new title]"
6. Update the description: "Set description to: [new description]"

Just tell me what you'd like to change! 🔄"""

NEW_TITLE_PROMPT = """Please provide a new title for your task. You can write it as:
- Just the title (e.g., 'hamza')
- 'title: hamza'
- 'my title is hamza'"""

GENERAL_FALLBACK = "I'm here to help! What would you like to talk about?"
APOLOGY = "Sorry, there was an error processing your request. Please try again."

INTENT_PROMPT = """Analyze the following message and classify it into one of these categories: 'create task', 'update task', 'delete task', 'list tasks', 'view task', 'chat'.

Classify as 'create task' when the message asks to create, make, add or start a new task.
Classify as 'update task' when it asks to update, change, modify or edit a task, its description, status or priority.
Classify as 'list tasks' when it asks to show, display, give or list the user's tasks.
Classify as 'view task' when it asks for the details of one task.
Classify as 'delete task' when it asks to delete or remove a task.

Message: "{message}"

Only respond with the category name."""

DETAILS_PROMPT = """Generate appropriate task details for a task titled "{title}".
Respond in this format:
Category: [one of: Design, Development, Backend, Frontend, Testing, Other]
Description: [detailed description]
Priority: [low/medium/high]
Due Date: [suggest a reasonable date]"""


# -----------------------------
# Drafts
# -----------------------------
@dataclass
class TaskDraft:
    title: str
    description: str = "Task created by AI assistant"
    category: str = "Other"
    priority: str = "medium"
    status: str = "To Do"
    startDate: datetime = field(default_factory=now_utc)
    dueDate: datetime = field(default_factory=lambda: now_utc() + timedelta(days=DEFAULT_DUE_DAYS))
    is_duplicate: bool = False
    waiting_for_new_title: bool = False

    def task_fields(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("is_duplicate")
        data.pop("waiting_for_new_title")
        return data


class TempTaskStore:
    """Per-user drafts awaiting confirmation. Process-local; expiry is lazy."""

    def __init__(self, ttl_seconds: float = DRAFT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._drafts: Dict[str, Tuple[TaskDraft, float]] = {}
        self._lock = threading.Lock()

    def put(self, user_id: str, draft: TaskDraft) -> None:
        if draft is None or not draft.title:
            raise ValueError("Invalid task details: Missing title")
        with self._lock:
            self._drafts[str(user_id)] = (draft, self.clock())

    def get(self, user_id: str) -> Optional[TaskDraft]:
        with self._lock:
            entry = self._drafts.get(str(user_id))
            if entry is None:
                return None
            draft, stored_at = entry
            if self.clock() - stored_at > self.ttl_seconds:
                del self._drafts[str(user_id)]
                logger.info("Draft task for %s expired", user_id)
                return None
            return draft

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._drafts.pop(str(user_id), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._drafts)


# -----------------------------
# Parsing helpers
# -----------------------------
def _add_month(dt: datetime) -> datetime:
    year, month = (dt.year + 1, 1) if dt.month == 12 else (dt.year, dt.month + 1)
    for day in (dt.day, 30, 29, 28):
        try:
            return dt.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return dt + timedelta(days=30)


def parse_relative_date(text: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """today / tomorrow / next week / next month / in N days / a calendar date."""
    now = now or now_utc()
    cleaned = text.strip().strip("\"'.").lower()
    if not cleaned:
        return None
    if "next week" in cleaned:
        return now + timedelta(days=7)
    if "tomorrow" in cleaned:
        return now + timedelta(days=1)
    if "today" in cleaned:
        return now
    if "next month" in cleaned:
        return _add_month(now)
    in_days = re.search(r"in\s+(\d+)\s+days?", cleaned)
    if in_days:
        try:
            return now + timedelta(days=int(in_days.group(1)))
        except (OverflowError, ValueError):
            return None
    try:
        return as_utc(datetime.fromisoformat(text.strip().strip("\"'.")))
    except ValueError:
        pass
    for fmt in ("%m/%d/%Y", "%d-%m-%Y", "%B %d, %Y", "%B %d %Y", "%d %B %Y", "%b %d, %Y", "%b %d %Y"):
        try:
            return as_utc(datetime.strptime(cleaned, fmt))
        except ValueError:
            continue
    return None


def parse_generated_details(text: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Pull Category / Description / Priority / Due Date lines from an LLM reply."""
    now = now or now_utc()
    details: Dict[str, Any] = {}
    cleaned = text.replace("**", "")
    category = re.search(r"Category:\s*(Design|Development|Backend|Frontend|Testing|Other)", cleaned, re.I)
    if category:
        details["category"] = normalize_category(category.group(1))
    description = re.search(r"Description:\s*(.*?)(?:\n|$)", cleaned)
    if description and description.group(1).strip():
        details["description"] = description.group(1).strip()
    priority = re.search(r"Priority:\s*(low|medium|high)", cleaned, re.I)
    if priority:
        details["priority"] = priority.group(1).lower()
    due = re.search(r"Due Date:\s*(.*?)(?:\n|$)", cleaned)
    if due:
        details["dueDate"] = parse_relative_date(due.group(1), now) or now + timedelta(days=DEFAULT_DUE_DAYS)
    return details


def inline_hints(message: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Details the user spelled out themselves ("high priority, due tomorrow")."""
    hints: Dict[str, Any] = {}
    priority = PRIORITY_HINT.search(message)
    if priority:
        hints["priority"] = (priority.group(1) or priority.group(2)).lower()
    due = DUE_HINT.search(message)
    if due:
        parsed = parse_relative_date(due.group(1), now)
        if parsed:
            hints["dueDate"] = parsed
    category = CATEGORY_HINT.search(message)
    if category:
        hints["category"] = normalize_category(category.group(1))
    return hints


def _strip_hints(title: str) -> str:
    for pattern in (PRIORITY_HINT, DUE_HINT, CATEGORY_HINT):
        title = pattern.sub("", title)
    return re.sub(r"\s*(?:,|\bwith\b)\s*$", "", title.strip(" ,")).strip()


def extract_title(message: str) -> str:
    for pattern in CREATE_PATTERNS:
        match = pattern.match(message.strip())
        if match:
            title = match.group(1).split(",")[0]
            return _strip_hints(title).strip("\"' ")
    fallback = re.sub(r"^(?:create|add|make)(?:\s+a)?(?:\s+new)?\s+task(?:\s*:)?\s*", "", message.strip(), flags=re.I)
    if fallback == message.strip():
        return ""
    return _strip_hints(fallback.split(",")[0]).strip("\"' ")


def match_delete_title(message: str) -> Optional[str]:
    text = message.strip()
    for pattern in DELETE_PATTERNS:
        match = pattern.match(text)
        if match:
            title = match.group(1).strip().strip("\"'")
            return re.sub(r"^task\s*:?\s*", "", title, flags=re.I).strip() or None
    return None


def match_update_title(message: str) -> Optional[str]:
    for pattern in UPDATE_TITLE_PATTERNS:
        match = pattern.match(message.strip())
        if match:
            title = re.sub(r"[()\"']", "", match.group(1)).strip()
            return title or None
    return None


def match_view_title(message: str) -> Optional[str]:
    for pattern in VIEW_PATTERNS:
        match = pattern.match(message.strip())
        if match:
            return match.group(1).strip() or None
    return None


def task_from_history(history: List[Dict[str, Any]]) -> Optional[str]:
    """Most recent task title mentioned in the conversation."""
    for entry in reversed(history or []):
        text = entry.get("message") or ""
        for pattern in HISTORY_TASK_PATTERNS:
            match = pattern.search(text)
            if match:
                return match.group(1).strip()
    return None


def task_from_context(message: str, history: List[Dict[str, Any]]) -> Optional[str]:
    for pattern in CONTEXT_DELETE_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1).strip()
    return task_from_history(history)


FIELD_NAMES = {
    "title": "title",
    "name": "title",
    "status": "status",
    "state": "status",
    "priority": "priority",
    "category": "category",
    "description": "description",
    "details": "description",
    "duedate": "dueDate",
    "due": "dueDate",
    "deadline": "dueDate",
}


def normalize_field_update(field_name: str, value: str, now: Optional[datetime] = None) -> Tuple[str, Any]:
    """Map a chat field/value pair onto a Task field. Raises ValueError."""
    key = FIELD_NAMES.get(re.sub(r"\s+", "", field_name.lower()))
    if key is None:
        raise ValueError(f"Unknown field: {field_name}")
    value = value.strip().strip("\"'")
    if key == "title":
        if not value:
            raise ValueError("Title cannot be empty")
        return key, value
    if key == "status":
        return key, normalize_status(value)
    if key == "priority":
        return key, normalize_priority(value)
    if key == "category":
        return key, normalize_category(value)
    if key == "dueDate":
        due = parse_relative_date(value, now)
        if due is None:
            raise ValueError("Invalid date format")
        return key, due
    return key, value


def _fmt_date(value: Optional[datetime]) -> str:
    return as_utc(value).strftime("%Y-%m-%d") if value else "Not set"


def format_draft(draft: TaskDraft) -> str:
    return f"""{RULE}
Title: {draft.title}
Category: {draft.category}
Priority: {draft.priority}
Due Date: {_fmt_date(draft.dueDate)}

📝 Description:
{draft.description}"""


def format_task(task: Dict[str, Any]) -> str:
    return f"""{RULE}
Title: {task.get('title')}
Status: {task.get('status')}
Priority: {task.get('priority')}
Category: {task.get('category')}
Due Date: {_fmt_date(task.get('dueDate'))}
Description: {task.get('description') or ''}"""


def _confirmation(draft: TaskDraft, heading: str = "📋 Please confirm the task details:") -> str:
    return f"""{heading}
{format_draft(draft)}

Would you like to create this task? (Reply with yes/no)

Note: This confirmation will expire in 10 minutes."""


CREATE_VERBS = "create|make|add"
UPDATE_VERBS = "update|change|modify"


def _is_initial_request(message: str, verbs: str) -> bool:
    if len(message) >= 50 or ":" in message:
        return False
    lowered = message.lower()
    return bool(
        re.match(rf"^(hello|hi|hey)?.*({verbs}).*tasks?.*$", lowered)
        and not any(word in lowered for word in ("status", "priority", "due"))
    )


# -----------------------------
# Intent classification
# -----------------------------
class IntentClassifier:
    def __init__(self, llm: GeminiClient):
        self.llm = llm

    def match_rules(self, message: str) -> Optional[str]:
        text = message.strip()
        if FIELD_UPDATE_PATTERN.match(text) or TASK_AND_FIELD_PATTERN.match(text):
            return "update task"
        if any(p.match(text) for p in DELETE_PATTERNS):
            return "delete task"
        if any(p.match(text) for p in CREATE_PATTERNS):
            return "create task"
        if any(p.search(text) for p in GENERAL_PATTERNS):
            return GENERAL_CONVERSATION
        return None

    async def classify(self, message: str) -> str:
        intent = self.match_rules(message)
        if intent:
            return intent
        try:
            answer = await self.llm.generate(INTENT_PROMPT.format(message=message))
        except GeminiError as e:
            logger.error("Intent analysis failed: %s", e)
            raise ChatbotError("Failed to analyze intent") from e
        answer = answer.strip().strip("'\".").lower()
        return answer if answer in INTENTS else "chat"


# -----------------------------
# Assistant
# -----------------------------
@dataclass
class ChatResult:
    success: bool
    ai_response: str
    task: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class Chatbot:
    def __init__(self, db: Database, llm: GeminiClient, store: TempTaskStore):
        self.db = db
        self.llm = llm
        self.store = store
        self.classifier = IntentClassifier(llm)

    async def process_message(
        self, user_id: str, message: str, history: Optional[List[Dict[str, Any]]] = None
    ) -> ChatResult:
        history = history or []
        message = message.strip()
        try:
            return await self._route(str(user_id), message, history)
        except (ChatbotError, GeminiError, PyMongoError, ApiError) as e:
            logger.error("Error processing chat message for %s: %s", user_id, e)
            return ChatResult(False, APOLOGY, error=str(e))
        except Exception as e:
            logger.exception("Unexpected error processing chat message for %s", user_id)
            return ChatResult(False, APOLOGY, error=str(e))

    async def _route(self, user_id: str, message: str, history: List[Dict[str, Any]]) -> ChatResult:
        draft = self.store.get(user_id)
        if draft is not None:
            if draft.waiting_for_new_title:
                return self._retitle(user_id, draft, message)
            if CONFIRM_PATTERN.match(message):
                return self._confirm(user_id, draft)
            if REJECT_PATTERN.match(message):
                return self._reject(user_id, draft)

        delete_title = match_delete_title(message)
        if delete_title:
            return self.delete_task(user_id, delete_title)

        intent = await self.classifier.classify(message)
        lowered = message.lower()
        logger.info("Chat intent for %s: %s", user_id, intent)

        wants_create = intent == "create task" or ("create" in lowered and "task" in lowered)
        wants_update = intent == "update task" or (not wants_create and _is_initial_request(message, UPDATE_VERBS))

        if intent in ("chat", GENERAL_CONVERSATION) and not (wants_create or wants_update):
            return ChatResult(True, await self.general_response(message))
        if wants_update:
            return self.update_task(user_id, message, history)
        if intent == "list tasks":
            return self.list_tasks(user_id)
        if intent == "view task":
            return self.view_task(user_id, message, history)
        if wants_create:
            return await self.create_task(user_id, message)
        if intent == "delete task":
            title = task_from_context(message, history)
            if not title:
                return ChatResult(True, "Which task would you like to delete? Please provide the task title.")
            return self.delete_task(user_id, title)
        return ChatResult(True, await self.llm.generate(message))

    # General conversation
    async def general_response(self, message: str) -> str:
        prompt = f'You are a friendly and helpful AI assistant for a task manager. Respond naturally to this message: "{message}"'
        try:
            return await self.llm.generate(prompt)
        except GeminiError as e:
            logger.warning("General conversation reply failed: %s", e)
            return GENERAL_FALLBACK

    # Create
    async def create_task(self, user_id: str, message: str) -> ChatResult:
        if _is_initial_request(message, CREATE_VERBS) and not extract_title(message):
            return ChatResult(True, CREATE_HELP)

        title = extract_title(message)
        if not title:
            title = await self._suggest_title(message)
        if not title:
            return ChatResult(False, "Please provide a title for your task. For example, tell me what the task is about.",
                              error="No task title found")

        now = now_utc()
        details: Dict[str, Any] = {}
        try:
            details.update(parse_generated_details(await self.llm.generate(DETAILS_PROMPT.format(title=title)), now))
        except GeminiError as e:
            logger.warning("Falling back to default task details: %s", e)
        details.update(inline_hints(message, now))
        draft = TaskDraft(title=title, startDate=now, **details)

        existing = find_task_by_title(self.db, user_id, title)
        if existing:
            draft.is_duplicate = True
            self.store.put(user_id, draft)
            return ChatResult(True, f"""⚠️ A task with the title "{existing['title']}" already exists.

Would you like to:
1. Create it anyway (reply with "yes")
2. Choose a different title (reply with "no")

Current task details:
{format_draft(draft)}""")

        self.store.put(user_id, draft)
        return ChatResult(True, _confirmation(draft))

    async def _suggest_title(self, message: str) -> str:
        try:
            suggestion = await self.llm.generate(f'Generate a short task title from this message: "{message}". Reply with the title only.')
        except GeminiError as e:
            logger.warning("Title suggestion failed: %s", e)
            return ""
        return suggestion.splitlines()[0].strip().strip("*\"' ") if suggestion else ""

    def _confirm(self, user_id: str, draft: TaskDraft) -> ChatResult:
        missing = [name for name in ("title", "description", "category", "priority", "status") if not getattr(draft, name)]
        if missing:
            self.store.clear(user_id)
            return ChatResult(False, "There was an error preparing your task. Please try again.",
                              error=f"Missing required fields: {', '.join(missing)}")
        try:
            doc = insert_task(self.db, user_id, {**draft.task_fields(), "manual": False})
        except ApiError as e:
            self.store.clear(user_id)
            return ChatResult(False, f"Invalid task data: {e.message}", error=e.message)
        self.store.clear(user_id)
        logger.info("Chat assistant created task %s for %s", doc["_id"], user_id)
        notify(self.db, user_id, "New Task Created", f"AI Assistant created a new task: {doc['title']}", "task",
               setting="taskNotifs")
        started = _fmt_date(doc.get("startDate"))
        return ChatResult(True, f"""📋 Task Details:
{format_task(doc)}
Start Date: {started}""", task=task_view(doc))

    def _reject(self, user_id: str, draft: TaskDraft) -> ChatResult:
        if draft.is_duplicate:
            draft.waiting_for_new_title = True
            self.store.put(user_id, draft)
            return ChatResult(True, NEW_TITLE_PROMPT)
        self.store.clear(user_id)
        return ChatResult(True, "Task creation cancelled. Let me know if you'd like to create a different task!")

    def _retitle(self, user_id: str, draft: TaskDraft, message: str) -> ChatResult:
        new_title = ""
        for pattern in NEW_TITLE_PATTERNS:
            match = pattern.match(message.strip())
            if match:
                new_title = match.group(1).strip().strip("\"'")
                break
        if not new_title:
            return ChatResult(True, "I couldn't understand the title. Please provide it again.")
        if find_task_by_title(self.db, user_id, new_title):
            return ChatResult(True, f'⚠️ The title "{new_title}" also exists. Please try a different title.')
        draft.title = new_title
        draft.waiting_for_new_title = False
        draft.is_duplicate = False
        self.store.put(user_id, draft)
        return ChatResult(True, _confirmation(draft, "📋 Please confirm the task details with the new title:"))

    # Update
    def update_task(self, user_id: str, message: str, history: List[Dict[str, Any]]) -> ChatResult:
        combined = TASK_AND_FIELD_PATTERN.match(message)
        if combined:
            return self._apply_field(user_id, combined.group(1).strip(), combined.group(2), combined.group(3))

        rename = RENAME_PATTERN.match(message)
        field_set = None if rename else next((m for m in (p.match(message) for p in FIELD_SET_PATTERNS) if m), None)
        if rename or (field_set and re.sub(r"\s+", "", field_set.group(1).lower()) in FIELD_NAMES):
            title = task_from_history(history)
            if not title:
                return ChatResult(True, "Which task do you want to update? Say \"Update task: [task title]\" first.")
            if rename:
                return self._apply_field(user_id, title, "title", rename.group(1))
            return self._apply_field(user_id, title, field_set.group(1), field_set.group(2))

        title = match_update_title(message)
        if not title or (_is_initial_request(message, UPDATE_VERBS) and re.search(r"\btasks?$", message, re.I)):
            return ChatResult(True, UPDATE_HELP)
        task = find_task_by_title(self.db, user_id, title, exact=False)
        if not task:
            return self._not_found(user_id, title)
        return ChatResult(True, f"""📋 Current Task Details for task "{task['title']}":
{format_task(task)}

{UPDATE_FIELDS_HELP}""")

    def _apply_field(self, user_id: str, title: str, field_name: str, value: str) -> ChatResult:
        task = find_task_by_title(self.db, user_id, title) or find_task_by_title(self.db, user_id, title, exact=False)
        if not task:
            return self._not_found(user_id, title)
        try:
            key, new_value = normalize_field_update(field_name, value)
        except ValueError as e:
            return ChatResult(False, f"Error updating {field_name.strip().lower()}: {e}", error=str(e))
        updated = apply_task_update(self.db, task, {key: new_value})
        notify(self.db, user_id, "Task Updated", f"AI Assistant updated task: {updated['title']}", "update",
               setting="taskNotifs")
        shown = _fmt_date(new_value) if key == "dueDate" else new_value
        return ChatResult(True, f"""✅ Updated task "{updated['title']}": {key} set to "{shown}"

Current Details:
{format_task(updated)}""")

    def _not_found(self, user_id: str, title: str) -> ChatResult:
        suggestions = similar_tasks(self.db, user_id, title)
        hint = ""
        if suggestions:
            hint = "\n\nDid you mean one of these tasks?\n" + "\n".join(f"• {t['title']}" for t in suggestions)
        return ChatResult(False, f'I couldn\'t find a task with the title "{title}".{hint}\n\nPlease check the title and try again.',
                          error="Task not found")

    # Delete
    def delete_task(self, user_id: str, title: str) -> ChatResult:
        task = find_task_by_title(self.db, user_id, title)
        if not task:
            suggestions = similar_tasks(self.db, user_id, title)
            hint = ""
            if suggestions:
                hint = "\n\nDid you mean one of these tasks?\n" + "\n".join(f"• {t['title']}" for t in suggestions)
            return ChatResult(True, f'❌ I couldn\'t find a task with the title "{title}".{hint}')
        self.db["task"].delete_one({"_id": task["_id"]})
        logger.info("Chat assistant deleted task %s for %s", task["_id"], user_id)
        notify(self.db, user_id, "Task Deleted", f"Task \"{task['title']}\" has been deleted", "task", setting="taskNotifs")
        return ChatResult(True, f'✅ Task "{task["title"]}" has been deleted successfully!')

    # List / view
    def list_tasks(self, user_id: str) -> ChatResult:
        tasks = list(self.db["task"].find(owned_by("user", user_id)))
        if not tasks:
            return ChatResult(True, NO_TASKS)
        tasks.sort(key=lambda t: (t.get("title") or "").lower())
        sections = []
        for status in TASK_STATUSES:
            group = [t for t in tasks if t.get("status") == status]
            if group:
                lines = "\n".join(f"{i}. {t['title']} ({t.get('priority')} priority)" for i, t in enumerate(group, 1))
                sections.append(f"{status} ({len(group)}):\n{lines}")
        body = "\n\n".join(sections)
        return ChatResult(True, f"""📋 Your Tasks ({len(tasks)} total):
{RULE}
{body}

Need to update a task? Just say "Update task: [task title]" 📝
Want to add another task? Say "Create new task" ✨""")

    def view_task(self, user_id: str, message: str, history: List[Dict[str, Any]]) -> ChatResult:
        title = match_view_title(message) or task_from_history(history)
        if not title:
            return ChatResult(True, "Which task do you want to view? Please provide the task title.")
        task = find_task_by_title(self.db, user_id, title) or find_task_by_title(self.db, user_id, title, exact=False)
        if not task:
            return self._not_found(user_id, title)
        return ChatResult(True, f"📋 Task \"{task['title']}\":\n{format_task(task)}")


# Process-wide draft store; not shared across server instances
temp_tasks = TempTaskStore()


def get_temp_store() -> TempTaskStore:
    return temp_tasks


def get_chatbot(
    db: Database = Depends(get_db),
    llm: GeminiClient = Depends(get_llm),
    store: TempTaskStore = Depends(get_temp_store),
) -> Chatbot:
    return Chatbot(db, llm, store)
