import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.database import Database

from chatbot import Chatbot, get_chatbot
from database import create_document, get_db, now_utc, oid, owned_by, serialize
from errors import ApiError
from schemas import Conversation, Message
from security import CurrentUser, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["conversations"])


class TitleUpdate(BaseModel):
    title: str


class SeedMessage(BaseModel):
    sender: Literal["user", "bot"]
    message: str
    timestamp: Optional[datetime] = None


class NewConversation(BaseModel):
    title: Optional[str] = None
    messages: List[SeedMessage] = Field(default_factory=list)


def _owned_conversation(db: Database, user_id: str, conv_id: Optional[str]) -> Dict[str, Any]:
    conv = db["conversation"].find_one({"_id": oid(conv_id), **owned_by("user", user_id)})
    if not conv:
        raise ApiError(404, "Conversation not found")
    return conv


def _message(sender: str, text: str) -> Dict[str, Any]:
    return Message(sender=sender, message=text, timestamp=now_utc()).model_dump()


@router.post("/conv/new", status_code=201)
async def new_conversation(
    body: Optional[NewConversation] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    body = body or NewConversation()
    stamp = now_utc()
    conv = Conversation(
        user=user.user_id,
        title=(body.title or "").strip() or "New Chat",
        messages=[Message(sender=m.sender, message=m.message, timestamp=m.timestamp or stamp) for m in body.messages],
    )
    doc = {**conv.model_dump(), "user": oid(user.user_id)}
    conv_id = create_document("conversation", doc, database=db)
    logger.info("Conversation %s started by %s", conv_id, user.user_id)
    return {"state": True, "conversation": serialize(db["conversation"].find_one({"_id": oid(conv_id)}))}


@router.get("/conv")
async def list_conversations(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    cursor = db["conversation"].find(owned_by("user", user.user_id)).sort("updatedAt", DESCENDING)
    return {"state": True, "conversations": [serialize(c) for c in cursor]}


@router.get("/conv/{conv_id}")
async def get_conversation(conv_id: str, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"state": True, "conversation": serialize(_owned_conversation(db, user.user_id, conv_id))}


@router.put("/conv/{conv_id}")
async def rename_conversation(
    conv_id: str,
    body: TitleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    conv = _owned_conversation(db, user.user_id, conv_id)
    title = body.title.strip()
    if not title:
        raise ApiError(400, "Title is required")
    db["conversation"].update_one({"_id": conv["_id"]}, {"$set": {"title": title, "updatedAt": now_utc()}})
    return {"state": True, "conversation": serialize(db["conversation"].find_one({"_id": conv["_id"]}))}


@router.put("/conv/{conv_id}/favorite")
async def favorite_conversation(
    conv_id: str,
    body: Dict[str, Any],
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    favorite = body.get("favorite")
    if not isinstance(favorite, bool):
        raise ApiError(400, "Favorite must be a boolean")
    conv = _owned_conversation(db, user.user_id, conv_id)
    db["conversation"].update_one({"_id": conv["_id"]}, {"$set": {"favorite": favorite, "updatedAt": now_utc()}})
    return {"state": True, "conversation": serialize(db["conversation"].find_one({"_id": conv["_id"]}))}


@router.delete("/conv/{conv_id}")
async def delete_conversation(conv_id: str, user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    conv = _owned_conversation(db, user.user_id, conv_id)
    db["conversation"].delete_one({"_id": conv["_id"]})
    return {"state": True, "message": "Conversation deleted successfully"}


@router.post("/conv/ask")
async def ask(
    body: Dict[str, Any],
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
    bot: Chatbot = Depends(get_chatbot),
):
    message = body.get("message")
    message = message.strip() if isinstance(message, str) else ""
    conv_id = body.get("convId")
    if not message or not conv_id:
        raise ApiError(400, "Message and conversation ID are required")
    conv = _owned_conversation(db, user.user_id, conv_id)

    user_entry = _message("user", message)
    try:
        result = await bot.process_message(user.user_id, message, conv.get("messages") or [])
    except Exception:
        logger.exception("Chat assistant failed for conversation %s", conv["_id"])
        db["conversation"].update_one(
            {"_id": conv["_id"]},
            {"$push": {"messages": user_entry}, "$set": {"updatedAt": now_utc()}},
        )
        raise ApiError(500, "Failed to process your message")

    reply = result.ai_response
    if result.task:
        reply += f"\n\n✅ Task \"{result.task['title']}\" has been created successfully!"
    elif result.error:
        reply += f"\n\n❌ Error: {result.error}"

    db["conversation"].update_one(
        {"_id": conv["_id"]},
        {"$push": {"messages": {"$each": [user_entry, _message("bot", reply)]}}, "$set": {"updatedAt": now_utc()}},
    )
    return {
        "state": True,
        "response": reply,
        "conversation": serialize(db["conversation"].find_one({"_id": conv["_id"]})),
    }
