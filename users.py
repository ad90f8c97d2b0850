import json
import logging
import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import jwt
from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, EmailStr, ValidationError
from pymongo.database import Database

from config import settings
from database import as_utc, get_db, get_documents, jsonable, now_utc, oid, owned_by, serialize
from errors import ApiError
from mailer import Mailer, get_mailer
from notifications import notify
from schemas import NotificationSettings, User
from security import (
    CurrentUser,
    create_access_token,
    create_reset_token,
    decode_token,
    get_current_user,
    hash_password,
    verify_password,
)
from tasks import task_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

RECOVERY_MESSAGE = "If a user with this email exists, they will receive password reset instructions."
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp"}


# -----------------------------
# Helpers
# -----------------------------
def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "fullName": user.get("fullName"),
        "email": user.get("email"),
        "job": user.get("job"),
        "phoneNumber": user.get("phoneNumber", ""),
        "languages": user.get("languages", "English"),
        "location": user.get("location", ""),
        "about": user.get("about", ""),
        "skills": user.get("skills", []),
        "profileImage": user.get("profileImage") or None,
        "bannerImage": user.get("bannerImage") or None,
        "joinedDate": jsonable(user.get("joinedDate")),
    }


def _load_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise ApiError(404, "User not found")
    return user


# -----------------------------
# Schemas (requests)
# -----------------------------
class RegisterRequest(BaseModel):
    fullName: str
    job: str
    email: EmailStr
    password: str
    location: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    newPassword: str


class ProfileUpdate(BaseModel):
    fullName: Optional[str] = None
    location: Optional[str] = None
    languages: Optional[str] = None
    phoneNumber: Optional[str] = None
    email: Optional[EmailStr] = None
    about: Optional[str] = None
    skills: Optional[List[str]] = None


class PasswordUpdate(BaseModel):
    currentPassword: str
    newPassword: str


class NotificationSettingsUpdate(BaseModel):
    taskNotifs: Optional[bool] = None
    taskReminders: Optional[bool] = None
    errorNotifs: Optional[bool] = None
    successNotifs: Optional[bool] = None
    settingsNotifs: Optional[bool] = None
    updateNotifs: Optional[bool] = None
    profileNotifs: Optional[bool] = None


# -----------------------------
# Auth endpoints
# -----------------------------
@router.post("/register")
def register(body: RegisterRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        return {"state": False, "message": "Email already exists."}
    if not body.password:
        raise ApiError(400, "Password is required")
    try:
        user = User(
            fullName=body.fullName.strip().lower(),
            job=body.job.strip(),
            email=body.email,
            password=hash_password(body.password),
            location=(body.location or "").strip(),
            joinedDate=now_utc(),
        )
    except ValidationError as e:
        raise ApiError(400, e.errors()[0].get("msg", "Invalid registration data"))
    doc = user.model_dump()
    doc["createdAt"] = doc["updatedAt"] = doc["joinedDate"]
    res = db["user"].insert_one(doc)
    doc["_id"] = res.inserted_id
    logger.info("User registered: %s", res.inserted_id)
    return {"state": True, "message": "User registered successfully", "user": public_user(doc)}


@router.post("/login")
def login(body: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password")):
        logger.info("Failed login for %s", body.email)
        return {"state": False, "message": "Invalid credentials"}
    token = create_access_token(str(user["_id"]), user["email"])
    return {"state": True, "message": "Login successful", "token": token, "user": public_user(user)}


@router.post("/forgot-password")
def forgot_password(
    body: ForgotPasswordRequest,
    db: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    user = db["user"].find_one({"email": body.email})
    if not user:
        return {"state": False, "message": RECOVERY_MESSAGE}

    token = create_reset_token(str(user["_id"]))
    expires = now_utc() + timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"resetPasswordToken": token, "resetPasswordExpires": expires}},
    )
    result = mailer.send_password_reset(user["email"], user.get("fullName", ""), token)
    if not result.sent and not result.preview_url:
        return {"state": False, "message": "Failed to send reset email. Please try again later."}
    response = {"state": True, "message": RECOVERY_MESSAGE}
    if result.preview_url:
        response["previewUrl"] = result.preview_url
    return response


@router.post("/reset-password")
def reset_password(body: ResetPasswordRequest, db: Database = Depends(get_db)):
    try:
        claims = decode_token(body.token)
    except jwt.PyJWTError:
        return {"state": False, "message": "Invalid or expired reset link"}
    if claims.get("purpose") != "reset" or not claims.get("userId"):
        return {"state": False, "message": "Invalid or expired reset link"}

    user = db["user"].find_one({"_id": oid(claims.get("userId"))})
    if not user:
        return {"state": False, "message": "User not found"}

    expires = as_utc(user.get("resetPasswordExpires"))
    stored = user.get("resetPasswordToken") or ""
    if not stored or not secrets.compare_digest(stored, body.token) or not expires or expires < now_utc():
        return {"state": False, "message": "Reset link has expired or is invalid"}
    if not body.newPassword:
        raise ApiError(400, "Password is required")

    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password": hash_password(body.newPassword), "updatedAt": now_utc()},
            "$unset": {"resetPasswordToken": "", "resetPasswordExpires": ""},
        },
    )
    logger.info("Password reset for user %s", user["_id"])
    return {"state": True, "message": "Password has been reset successfully"}


# -----------------------------
# Profile endpoints
# -----------------------------
@router.get("/me")
async def me(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"state": True, "user": public_user(_load_user(db, user.user_id))}


@router.put("/update-profile")
async def update_profile(
    body: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    current = _load_user(db, user.user_id)
    if body.email and body.email != current["email"]:
        if db["user"].find_one({"email": body.email}):
            raise ApiError(400, "Email already in use")

    update: Dict[str, Any] = {}
    for field in ["location", "languages", "phoneNumber", "email"]:
        val = getattr(body, field)
        if val:
            update[field] = val
    if body.fullName:
        update["fullName"] = body.fullName.strip().lower()
    if body.about is not None:
        update["about"] = body.about
    if body.skills is not None:
        update["skills"] = body.skills
    update["updatedAt"] = now_utc()

    db["user"].update_one({"_id": current["_id"]}, {"$set": update})
    updated = db["user"].find_one({"_id": current["_id"]})
    notify(db, user.user_id, "Profile Updated", "Your profile has been updated", "profile", setting="profileNotifs")
    return {"state": True, "message": "Profile updated successfully", "user": public_user(updated)}


@router.put("/profile/password")
def update_password(
    body: PasswordUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    current = _load_user(db, user.user_id)
    if not verify_password(body.currentPassword, current.get("password")):
        raise ApiError(400, "Current password is incorrect")
    if not body.newPassword:
        raise ApiError(400, "Password is required")
    db["user"].update_one(
        {"_id": current["_id"]},
        {"$set": {"password": hash_password(body.newPassword), "updatedAt": now_utc()}},
    )
    return {"state": True, "message": "Password updated successfully"}


@router.post("/upload-images")
async def upload_images(
    profileImage: Optional[UploadFile] = File(default=None),
    bannerImage: Optional[UploadFile] = File(default=None),
    removeProfileImage: bool = Form(default=False),
    removeBannerImage: bool = Form(default=False),
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    current = _load_user(db, user.user_id)
    update: Dict[str, Any] = {}
    if removeProfileImage:
        update["profileImage"] = None
    if removeBannerImage:
        update["bannerImage"] = None

    for field, upload, folder in (
        ("profileImage", profileImage, "profiles"),
        ("bannerImage", bannerImage, "banners"),
    ):
        if upload is None or not upload.filename:
            continue
        suffix = Path(upload.filename).suffix.lower()
        if suffix not in IMAGE_SUFFIXES:
            raise ApiError(400, f"Unsupported image type: {suffix or 'none'}")
        target_dir = Path(settings.UPLOADS_DIR) / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        name = f"{int(now_utc().timestamp() * 1000)}{secrets.token_hex(4)}{suffix}"
        (target_dir / name).write_bytes(await upload.read())
        update[field] = f"/uploads/{folder}/{name}"

    if update:
        db["user"].update_one({"_id": current["_id"]}, {"$set": {**update, "updatedAt": now_utc()}})
        current.update(update)
    return {
        "state": True,
        "message": "Images updated successfully",
        "user": {"profileImage": current.get("profileImage"), "bannerImage": current.get("bannerImage")},
    }


@router.delete("/delete-account")
async def delete_account(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    current = _load_user(db, user.user_id)
    db["task"].delete_many(owned_by("user", user.user_id))
    db["conversation"].delete_many(owned_by("user", user.user_id))
    db["notification"].delete_many(owned_by("userId", user.user_id))
    db["user"].delete_one({"_id": current["_id"]})
    logger.info("Deleted account %s", user.user_id)
    return {"state": True, "message": "Account deleted successfully"}


@router.get("/export-data")
async def export_data(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    current = _load_user(db, user.user_id)
    profile = public_user(current)
    profile.pop("id")
    profile.update(serialize({"createdAt": current.get("createdAt"), "updatedAt": current.get("updatedAt")}))
    tasks = [task_view(t) for t in get_documents("task", owned_by("user", user.user_id), database=db)]
    return Response(
        content=json.dumps({"profile": profile, "tasks": tasks}, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename=user_data_{user.user_id}.json"},
    )


# -----------------------------
# Notification preferences
# -----------------------------
@router.get("/notification-settings")
async def get_notification_settings(user: CurrentUser = Depends(get_current_user), db: Database = Depends(get_db)):
    current = _load_user(db, user.user_id)
    prefs = NotificationSettings(**(current.get("notificationSettings") or {}))
    return {"state": True, "notificationSettings": prefs.model_dump()}


@router.put("/notification-settings")
async def update_notification_settings(
    body: NotificationSettingsUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    current = _load_user(db, user.user_id)
    prefs = NotificationSettings(**(current.get("notificationSettings") or {}))
    merged = prefs.model_copy(update=body.model_dump(exclude_none=True))
    db["user"].update_one({"_id": current["_id"]}, {"$set": {"notificationSettings": merged.model_dump()}})
    notify(db, user.user_id, "Settings Updated", "Notification preferences saved", "settings", setting="settingsNotifs")
    return {"state": True, "message": "Notification settings updated", "notificationSettings": merged.model_dump()}
