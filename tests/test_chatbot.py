from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from chatbot import (
    APOLOGY,
    GENERAL_FALLBACK,
    Chatbot,
    ChatbotError,
    IntentClassifier,
    TaskDraft,
    TempTaskStore,
    UPDATE_VERBS,
    _is_initial_request,
    extract_title,
    match_delete_title,
    normalize_field_update,
    parse_generated_details,
    parse_relative_date,
)
from database import now_utc
from tasks import insert_task

NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def user_id():
    return str(ObjectId())


@pytest.fixture
def bot(mongo, llm, clock):
    return Chatbot(mongo, llm, TempTaskStore(clock=clock))


def add_task(mongo, user_id, title, **extra):
    data = {"title": title, "category": "Other", "dueDate": now_utc() + timedelta(days=2), **extra}
    return insert_task(mongo, user_id, data)


# Draft store
def test_store_expires_lazily(clock):
    store = TempTaskStore(clock=clock)
    store.put("u1", TaskDraft(title="Draft"))
    clock.now += 599
    assert store.get("u1").title == "Draft"
    clock.now += 2
    assert store.get("u1") is None
    assert len(store) == 0


def test_store_rejects_untitled_draft():
    with pytest.raises(ValueError):
        TempTaskStore().put("u1", TaskDraft(title=""))


def test_store_clear():
    store = TempTaskStore()
    store.put("u1", TaskDraft(title="Draft"))
    store.clear("u1")
    store.clear("nobody")
    assert store.get("u1") is None


# Intent cascade
@pytest.mark.anyio
@pytest.mark.parametrize(
    "message, intent",
    [
        ("status: Done", "update task"),
        ("title: delete me", "update task"),
        ("Update task: Report, priority: high", "update task"),
        ("delete task: Report", "delete task"),
        ("remove hello", "delete task"),
        ("create task: Report", "create task"),
        ("Add task Buy milk", "create task"),
        ("hello there", "general_conversation"),
    ],
)
async def test_rules_run_before_llm(llm, message, intent):
    llm.fail = True
    assert await IntentClassifier(llm).classify(message) == intent
    assert llm.prompts == []


@pytest.mark.anyio
@pytest.mark.parametrize(
    "answer, intent",
    [("list tasks", "list tasks"), ("'View Task'.", "view task"), ("something else", "chat")],
)
async def test_llm_fallback(llm, answer, intent):
    llm.intent = answer
    assert await IntentClassifier(llm).classify("what's on my plate?") == intent


@pytest.mark.anyio
async def test_llm_failure_raises(llm):
    llm.fail = True
    with pytest.raises(ChatbotError):
        await IntentClassifier(llm).classify("what's on my plate?")


# Parsing helpers
def test_parse_relative_date():
    assert parse_relative_date("tomorrow", NOW) == NOW + timedelta(days=1)
    assert parse_relative_date("Next week", NOW) == NOW + timedelta(days=7)
    assert parse_relative_date("next month", NOW) == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert parse_relative_date("in 10 days", NOW) == NOW + timedelta(days=10)
    assert parse_relative_date("2025-03-01", NOW) == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert parse_relative_date("whenever", NOW) is None
    assert parse_relative_date("in 9999999 days", NOW) is None


def test_initial_request_detection():
    assert _is_initial_request("hello i want to update my tasks", UPDATE_VERBS)
    assert not _is_initial_request("update task: Report", UPDATE_VERBS)
    assert not _is_initial_request("update the due date of my task", UPDATE_VERBS)
    assert not _is_initial_request("hello i want to update my tasks " + "x" * 40, UPDATE_VERBS)


def test_parse_generated_details():
    text = "**Category:** Design\nDescription: Sketch the screens\nPriority: LOW\nDue Date: someday"
    details = parse_generated_details(text, NOW)
    assert details == {
        "category": "Design",
        "description": "Sketch the screens",
        "priority": "low",
        "dueDate": NOW + timedelta(days=3),
    }


def test_title_extraction():
    assert extract_title("Create task: Write report with high priority") == "Write report"
    assert extract_title("Create task: Build login page, high priority, due next week") == "Build login page"
    assert extract_title("add task Buy milk") == "Buy milk"
    assert extract_title("create a new task") == ""
    assert match_delete_title('delete task: "Old notes"') == "Old notes"
    assert match_delete_title("remove(Old notes)") == "Old notes"
    assert match_delete_title("what should I delete?") is None


def test_normalize_field_update():
    assert normalize_field_update("due date", "tomorrow", NOW) == ("dueDate", NOW + timedelta(days=1))
    assert normalize_field_update("Status", "cancled") == ("status", "Cancelled")
    assert normalize_field_update("priority", "HIGH") == ("priority", "high")
    with pytest.raises(ValueError):
        normalize_field_update("colour", "red")
    with pytest.raises(ValueError):
        normalize_field_update("due date", "eventually")


# Create flow
@pytest.mark.anyio
async def test_create_confirm_flow(bot, mongo, user_id):
    result = await bot.process_message(user_id, "Create task: Build login page, high priority, due next week")
    assert result.success
    assert "Please confirm" in result.ai_response
    assert "Title: Build login page" in result.ai_response
    assert "expire in 10 minutes" in result.ai_response
    assert mongo["task"].count_documents({}) == 0

    result = await bot.process_message(user_id, "yes")
    assert result.success
    assert result.task["title"] == "Build login page"

    stored = mongo["task"].find_one({"title": "Build login page"})
    assert stored["manual"] is False
    assert stored["priority"] == "high"
    assert stored["category"] == "Development"
    assert stored["description"] == "Generated description"
    assert stored["user"] == ObjectId(user_id)
    assert mongo["notification"].find_one({"title": "New Task Created"})
    assert bot.store.get(user_id) is None


@pytest.mark.anyio
async def test_create_reject(bot, mongo, user_id):
    await bot.process_message(user_id, "create task: Water plants")
    result = await bot.process_message(user_id, "no")
    assert "cancelled" in result.ai_response
    assert bot.store.get(user_id) is None
    assert mongo["task"].count_documents({}) == 0


@pytest.mark.anyio
async def test_create_uses_defaults_when_llm_fails(bot, llm, mongo, user_id):
    llm.fail = True
    result = await bot.process_message(user_id, "create task: Pay rent")
    assert result.success
    draft = bot.store.get(user_id)
    assert draft.category == "Other"
    assert draft.priority == "medium"
    await bot.process_message(user_id, "y")
    assert mongo["task"].find_one({"title": "Pay rent"})["description"] == "Task created by AI assistant"


@pytest.mark.anyio
async def test_expired_draft_is_not_created(bot, clock, mongo, user_id):
    await bot.process_message(user_id, "create task: Stale idea")
    clock.now += 601
    result = await bot.process_message(user_id, "yes")
    assert result.task is None
    assert result.ai_response == "Happy to help!"
    assert mongo["task"].count_documents({}) == 0


@pytest.mark.anyio
async def test_duplicate_title_asks_for_new_title(bot, mongo, user_id):
    add_task(mongo, user_id, "Report")

    result = await bot.process_message(user_id, "create task: report")
    assert "already exists" in result.ai_response
    assert bot.store.get(user_id).is_duplicate

    result = await bot.process_message(user_id, "no")
    assert "new title" in result.ai_response
    result = await bot.process_message(user_id, "title: Report")
    assert "also exists" in result.ai_response

    result = await bot.process_message(user_id, "my title is Quarterly report")
    assert "Title: Quarterly report" in result.ai_response
    result = await bot.process_message(user_id, "yes")
    assert result.task["title"] == "Quarterly report"
    assert mongo["task"].count_documents({}) == 2


@pytest.mark.anyio
async def test_create_help_for_vague_request(bot, user_id):
    result = await bot.process_message(user_id, "I want to create a new task")
    assert result.success
    assert "I'll help you create a new task" in result.ai_response
    assert bot.store.get(user_id) is None


@pytest.mark.anyio
@pytest.mark.parametrize("due", ["someday", "in 9999999 days"])
async def test_create_ignores_unusable_due_hint(bot, mongo, user_id, due):
    result = await bot.process_message(user_id, f"create task: Ship it, due {due}")
    assert result.success
    assert "Please confirm" in result.ai_response
    assert bot.store.get(user_id).dueDate.date() == (now_utc() + timedelta(days=1)).date()

    result = await bot.process_message(user_id, "yes")
    assert result.task["title"] == "Ship it"


@pytest.mark.anyio
async def test_create_unusable_due_hint_with_llm_down(bot, llm, user_id):
    llm.fail = True
    result = await bot.process_message(user_id, "create task: Ship it, due in 9999999 days")
    assert result.success
    assert bot.store.get(user_id).dueDate.date() == (now_utc() + timedelta(days=3)).date()


# Delete flow
@pytest.mark.anyio
async def test_delete_by_title(bot, mongo, user_id):
    add_task(mongo, user_id, "Report")
    result = await bot.process_message(user_id, "delete task: report")
    assert result.success
    assert "deleted successfully" in result.ai_response
    assert mongo["task"].count_documents({}) == 0
    assert mongo["notification"].find_one({"title": "Task Deleted"})


@pytest.mark.anyio
async def test_delete_missing_suggests(bot, mongo, user_id):
    add_task(mongo, user_id, "Report draft")
    result = await bot.process_message(user_id, "delete task: Report final")
    assert "couldn't find" in result.ai_response
    assert "• Report draft" in result.ai_response
    assert mongo["task"].count_documents({}) == 1


@pytest.mark.anyio
async def test_delete_only_own_tasks(bot, mongo, user_id):
    add_task(mongo, str(ObjectId()), "Report")
    await bot.process_message(user_id, "delete task: Report")
    assert mongo["task"].count_documents({}) == 1


# Update flow
@pytest.mark.anyio
async def test_update_task_and_field(bot, mongo, user_id):
    add_task(mongo, user_id, "Frontend Design")
    result = await bot.process_message(user_id, "Update task: Frontend Design, status: In Progress")
    assert result.success
    assert 'Updated task "Frontend Design"' in result.ai_response
    stored = mongo["task"].find_one({"title": "Frontend Design"})
    assert stored["status"] == "In Progress"
    assert stored["cancelled"] is False


@pytest.mark.anyio
async def test_update_invalid_value(bot, mongo, user_id):
    add_task(mongo, user_id, "Frontend Design")
    result = await bot.process_message(user_id, "Update task: Frontend Design, priority: urgent")
    assert not result.success
    assert "Invalid priority" in result.error
    assert mongo["task"].find_one({"title": "Frontend Design"})["priority"] == "medium"


@pytest.mark.anyio
@pytest.mark.parametrize("due", ["someday", "in 9999999 days"])
async def test_update_rejects_unusable_due_date(bot, mongo, user_id, due):
    add_task(mongo, user_id, "Report")
    before = mongo["task"].find_one({"title": "Report"})["dueDate"]
    result = await bot.process_message(user_id, f"update task: Report, due date: {due}")
    assert not result.success
    assert result.error == "Invalid date format"
    assert "Error updating" in result.ai_response
    assert mongo["task"].find_one({"title": "Report"})["dueDate"] == before


@pytest.mark.anyio
async def test_field_update_uses_history(bot, llm, mongo, user_id):
    add_task(mongo, user_id, "Frontend Design")
    history = [{"sender": "bot", "message": '📋 Current Task Details for task "Frontend Design":\nTitle: Frontend Design'}]

    result = await bot.process_message(user_id, "priority: high", history)
    assert result.success
    assert mongo["task"].find_one({"title": "Frontend Design"})["priority"] == "high"

    llm.intent = "update task"
    await bot.process_message(user_id, "set due date to tomorrow", history)
    due = mongo["task"].find_one({"title": "Frontend Design"})["dueDate"]
    assert due.date() == (now_utc() + timedelta(days=1)).date()


@pytest.mark.anyio
async def test_select_task_for_update(bot, llm, mongo, user_id):
    add_task(mongo, user_id, "Frontend Design")
    llm.intent = "update task"
    result = await bot.process_message(user_id, "update task: Frontend Design")
    assert "Current Task Details" in result.ai_response
    assert "What would you like to update?" in result.ai_response

    result = await bot.process_message(user_id, "update task: Backend API")
    assert not result.success
    assert result.error == "Task not found"


@pytest.mark.anyio
async def test_update_help(bot, user_id):
    result = await bot.process_message(user_id, "hello i want to update my tasks")
    assert "I'll help you update your tasks" in result.ai_response


# List / view / chat
@pytest.mark.anyio
async def test_list_tasks_empty(bot, llm, user_id):
    llm.intent = "list tasks"
    result = await bot.process_message(user_id, "show my tasks")
    assert "You don't have any tasks yet" in result.ai_response


@pytest.mark.anyio
async def test_list_tasks_grouped(bot, llm, mongo, user_id):
    add_task(mongo, user_id, "b task")
    add_task(mongo, user_id, "A task", priority="high")
    add_task(mongo, user_id, "Shipped", status="Done")
    llm.intent = "list tasks"
    result = await bot.process_message(user_id, "show my tasks")
    assert "Your Tasks (3 total)" in result.ai_response
    assert "To Do (2):\n1. A task (high priority)\n2. b task (medium priority)" in result.ai_response
    assert "Done (1):\n1. Shipped" in result.ai_response


@pytest.mark.anyio
async def test_view_task(bot, llm, mongo, user_id):
    add_task(mongo, user_id, "Report", description="Quarterly numbers")
    llm.intent = "view task"
    result = await bot.process_message(user_id, "show task Report")
    assert "Title: Report" in result.ai_response
    assert "Quarterly numbers" in result.ai_response


@pytest.mark.anyio
async def test_greeting_gets_llm_reply(bot, user_id):
    result = await bot.process_message(user_id, "hello")
    assert result.success
    assert result.ai_response == "Happy to help!"


@pytest.mark.anyio
async def test_greeting_fallback_when_llm_down(bot, llm, user_id):
    llm.fail = True
    result = await bot.process_message(user_id, "hello")
    assert result.success
    assert result.ai_response == GENERAL_FALLBACK


@pytest.mark.anyio
async def test_unclassifiable_message_with_llm_down(bot, llm, user_id):
    llm.fail = True
    result = await bot.process_message(user_id, "what's the weather like?")
    assert not result.success
    assert result.ai_response == APOLOGY
    assert result.error == "Failed to analyze intent"


@pytest.mark.anyio
async def test_unexpected_failure_returns_apology(bot, llm, user_id):
    def broken(user_id):
        raise RuntimeError("cursor exploded")

    bot.list_tasks = broken
    llm.intent = "list tasks"
    result = await bot.process_message(user_id, "show my tasks")
    assert result.success is False
    assert result.ai_response == APOLOGY
    assert result.error == "cursor exploded"
