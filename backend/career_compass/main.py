from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import time
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import access, board_store, feedback_store, group_store, profile_store
from .auth_store import (
    VERIFY_REASON_ACCOUNT_INACTIVE,
    create_auth_session,
    create_local_account,
    normalize_email,
    revoke_auth_session,
    validate_auth_session,
    verify_local_account_with_reason,
)
from .errors import AccessError
from .roles import Role, VerificationStatus
from .safety import content_preview, scan_record
from .scheduler import AutoUpgradeScheduler


def get_env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else int(default)
    except (TypeError, ValueError):
        value = int(default)

    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def get_admin_emails() -> set[str]:
    raw = os.getenv("CAREER_COMPASS_ADMIN_EMAILS", "")
    return {normalize_email(item) for item in raw.split(",") if item.strip()}


def is_public_path(path: str) -> bool:
    return path in {
        "/health",
        "/openapi.json",
        "/docs",
        "/docs/oauth2-redirect",
        "/redoc",
        "/api/auth/signup",
        "/api/auth/login",
    }


def is_login_required_path(path: str) -> bool:
    if is_public_path(path):
        return False
    return path.startswith("/api/")


def parse_auth_session_token(request: Request) -> str:
    header_token = request.headers.get("x-session-token", "").strip()
    if header_token:
        return header_token

    auth_header = request.headers.get("authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()

    return request.cookies.get(AUTH_COOKIE_NAME, "").strip()


AUTH_COOKIE_NAME = "career_compass_auth"
MAX_TEXT_LENGTH = 8_000
MAX_DOCUMENT_LENGTH = get_env_int("CAREER_COMPASS_MAX_DOCUMENT_CHARS", 4_000_000, min_value=1_024)
AUTH_SESSION_TTL_SECONDS = get_env_int("CAREER_COMPASS_AUTH_SESSION_TTL_SECONDS", 7 * 24 * 3600, min_value=300, max_value=30 * 24 * 3600)
AUTH_LOGIN_FAIL_LIMIT = get_env_int("CAREER_COMPASS_AUTH_LOGIN_FAIL_LIMIT", 6, min_value=2, max_value=100)
AUTH_LOGIN_FAIL_WINDOW_SECONDS = get_env_int("CAREER_COMPASS_AUTH_LOGIN_FAIL_WINDOW_SECONDS", 5 * 60, min_value=10, max_value=24 * 3600)
AUTH_LOGIN_LOCK_SECONDS = get_env_int("CAREER_COMPASS_AUTH_LOGIN_LOCK_SECONDS", 5 * 60, min_value=10, max_value=24 * 3600)

ERROR_CODE_BY_STATUS = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "TOO_MANY_REQUESTS",
    500: "INTERNAL_ERROR",
    503: "STORE_UNAVAILABLE",
}

SUSPICIOUS_PATTERNS = [
    re.compile(r"<\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"on(?:error|load)\s*=", re.IGNORECASE),
]

MODERATION_TABLES = ("project_ideas", "interview_questions", "work_opportunities", "groups", "feedback")

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("career_compass.api")


def normalize_text_value(value: str) -> str:
    normalized = re.sub(r"\u0000", "", value).strip()
    if not normalized:
        raise ValueError("text cannot be blank")
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(normalized):
            raise ValueError("text contains blocked pattern")
    return normalized


class AuthSignupRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=6, max_length=120)
    username: str | None = Field(default=None, min_length=1, max_length=40)
    gradYear: int | None = Field(default=None, ge=1900, le=2100)

    @field_validator("email")
    @classmethod
    def normalize_email_field(cls, value: str) -> str:
        normalized = normalize_email(value)
        if "@" not in normalized:
            raise ValueError("email is invalid")
        return normalized

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_text_value(value)


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=120)

    @field_validator("email")
    @classmethod
    def normalize_auth_email(cls, value: str) -> str:
        normalized = normalize_email(value)
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str | None = Field(default=None, min_length=1, max_length=40)
    organization: str | None = Field(default=None, max_length=120)
    bio: str | None = Field(default=None, max_length=2_000)
    skills: str | None = Field(default=None, max_length=1_000)
    gradYear: int | None = Field(default=None, ge=1900, le=2100)

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return normalize_text_value(value)

    @field_validator("organization", "bio", "skills")
    @classmethod
    def normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return normalize_text_value(stripped) if stripped else ""


class ProjectIdeaCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=180)
    description: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)

    @field_validator("title", "description")
    @classmethod
    def normalize_required_text(cls, value: str) -> str:
        return normalize_text_value(value)


class FieldCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=80)
    description: str = Field(default="", max_length=1_000)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        return normalize_text_value(value)

    @field_validator("description")
    @classmethod
    def normalize_description(cls, value: str) -> str:
        return normalize_text_value(value) if value.strip() else ""


class InterviewQuestionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    answer: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    leetcodeLink: str | None = Field(default=None, max_length=500)
    fieldId: int | None = Field(default=None, ge=1)

    @field_validator("question", "answer")
    @classmethod
    def normalize_required_text(cls, value: str) -> str:
        return normalize_text_value(value)

    @field_validator("leetcodeLink")
    @classmethod
    def normalize_link(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return normalize_text_value(value)


class WorkOpportunityCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=180)
    type: Literal["job", "internship"]
    salaryRange: str = Field(default="", max_length=80)
    description: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)
    applyLink: str = Field(min_length=1, max_length=500)

    @field_validator("title", "description", "applyLink")
    @classmethod
    def normalize_required_text(cls, value: str) -> str:
        return normalize_text_value(value)

    @field_validator("salaryRange")
    @classmethod
    def normalize_salary(cls, value: str) -> str:
        return value.strip()


class GroupCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=120)
    introduction: str = Field(default="", max_length=MAX_TEXT_LENGTH)
    projectId: int | None = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, value: str) -> str:
        return normalize_text_value(value)

    @field_validator("introduction")
    @classmethod
    def normalize_introduction(cls, value: str) -> str:
        return normalize_text_value(value) if value.strip() else ""


class GroupProgressRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    progress: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)

    @field_validator("progress")
    @classmethod
    def normalize_progress(cls, value: str) -> str:
        return normalize_text_value(value)


class VerificationSubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document: str = Field(min_length=1, max_length=MAX_DOCUMENT_LENGTH)
    documentName: str = Field(default="document.pdf", min_length=1, max_length=200)

    @field_validator("documentName")
    @classmethod
    def normalize_document_name(cls, value: str) -> str:
        return normalize_text_value(value)


class VerificationApproveRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["student", "alumni", "professor", "admin"] = "student"


class FeedbackCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: str = Field(min_length=1, max_length=180)
    description: str = Field(min_length=1, max_length=MAX_TEXT_LENGTH)

    @field_validator("subject", "description")
    @classmethod
    def normalize_required_text(cls, value: str) -> str:
        return normalize_text_value(value)


class ProfileItem(BaseModel):
    id: str
    email: str
    username: str | None
    role: str
    verificationStatus: str
    gradYear: int | None
    organization: str
    bio: str
    skills: str
    hasDocument: bool
    documentName: str | None
    createdAt: str


class AuthSignupResponse(BaseModel):
    requestId: str
    user: ProfileItem


class AuthLoginResponse(BaseModel):
    requestId: str
    user: ProfileItem
    token: str
    expiresAt: str
    autoUpgraded: bool


class AuthMeResponse(BaseModel):
    requestId: str
    user: ProfileItem
    expiresAt: str


class AuthLogoutResponse(BaseModel):
    requestId: str
    revoked: bool


class ProfileResponse(BaseModel):
    requestId: str
    item: ProfileItem


class ProfileListResponse(BaseModel):
    requestId: str
    items: list[ProfileItem]


class PermissionsResponse(BaseModel):
    requestId: str
    role: str
    verificationStatus: str
    create: dict[str, bool]
    apply: bool
    joinGroups: bool


class ProjectIdeaItem(BaseModel):
    id: int
    title: str
    description: str
    submittedBy: str
    ownerId: str
    createdAt: str


class ProjectIdeaResponse(BaseModel):
    requestId: str
    item: ProjectIdeaItem


class ProjectIdeaListResponse(BaseModel):
    requestId: str
    items: list[ProjectIdeaItem]


class FieldItem(BaseModel):
    id: int
    name: str
    description: str


class FieldResponse(BaseModel):
    requestId: str
    item: FieldItem


class FieldListResponse(BaseModel):
    requestId: str
    items: list[FieldItem]


class InterviewQuestionItem(BaseModel):
    id: int
    question: str
    answer: str
    leetcodeLink: str | None
    fieldId: int | None
    fieldName: str | None
    submittedBy: str
    ownerId: str
    createdAt: str


class InterviewQuestionResponse(BaseModel):
    requestId: str
    item: InterviewQuestionItem


class InterviewQuestionListResponse(BaseModel):
    requestId: str
    items: list[InterviewQuestionItem]


class WorkOpportunityItem(BaseModel):
    id: int
    title: str
    type: str
    salaryRange: str
    description: str
    applyLink: str
    submittedBy: str
    ownerId: str
    createdAt: str


class WorkOpportunityResponse(BaseModel):
    requestId: str
    item: WorkOpportunityItem


class WorkOpportunityListResponse(BaseModel):
    requestId: str
    items: list[WorkOpportunityItem]


class WorkOpportunityApplyResponse(BaseModel):
    requestId: str
    opportunityId: int
    applyLink: str


class GroupItem(BaseModel):
    id: int
    name: str
    introduction: str
    projectId: int | None
    ownerId: str
    members: list[str]
    pendingRequests: list[str]
    createdAt: str


class GroupResponse(BaseModel):
    requestId: str
    item: GroupItem


class GroupListResponse(BaseModel):
    requestId: str
    items: list[GroupItem]


class GroupProgressItem(BaseModel):
    userId: str
    progress: str
    updatedAt: str


class GroupProgressResponse(BaseModel):
    requestId: str
    item: GroupProgressItem


class GroupProgressListResponse(BaseModel):
    requestId: str
    items: list[GroupProgressItem]


class VerificationStatusResponse(BaseModel):
    requestId: str
    role: str
    verificationStatus: str
    documentName: str | None
    submittedAt: str | None


class VerificationDocumentResponse(BaseModel):
    requestId: str
    userId: str
    documentName: str | None
    documentData: str
    submittedAt: str | None
    verificationStatus: str


class FeedbackItem(BaseModel):
    id: int
    userId: str
    email: str
    subject: str
    description: str
    createdAt: str


class FeedbackResponse(BaseModel):
    requestId: str
    item: FeedbackItem


class FeedbackListResponse(BaseModel):
    requestId: str
    items: list[FeedbackItem]


class AutoUpgradeRunResponse(BaseModel):
    requestId: str
    upgradedCount: int
    upgradedIds: list[str]


class AnalyticsResponse(BaseModel):
    requestId: str
    totalUsers: int
    usersByRole: dict[str, int]
    newUsersLast7Days: int
    newUsersLast30Days: int
    pendingVerifications: int
    resources: dict[str, int]


class ModerationItem(BaseModel):
    table: str
    id: int
    ownerId: str
    createdAt: str
    preview: str
    flags: list[str]


class ModerationListResponse(BaseModel):
    requestId: str
    items: list[ModerationItem]


class ModerationDeleteResponse(BaseModel):
    requestId: str
    deleted: bool


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_seconds: int
    message: str | None = None


class AuthLoginRateLimiter:
    def __init__(self, *, fail_limit: int, window_seconds: int, lock_seconds: int):
        self.fail_limit = max(2, int(fail_limit))
        self.window_seconds = max(10, int(window_seconds))
        self.lock_seconds = max(10, int(lock_seconds))
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._blocked_until: dict[str, float] = {}
        self._lock = Lock()

    def _prune(self, key: str, now: float) -> deque[float]:
        queue = self._failures[key]
        while queue and now - queue[0] > self.window_seconds:
            queue.popleft()
        return queue

    def _locked(self, reset_seconds: int) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_seconds=reset_seconds,
            message=f"Too many failed login attempts. Retry in {reset_seconds}s",
        )

    def check(self, *, key: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            blocked_until = self._blocked_until.get(key, 0.0)
            if blocked_until > now:
                return self._locked(int(max(1, blocked_until - now)))
            self._blocked_until.pop(key, None)
            queue = self._prune(key, now)
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, self.fail_limit - len(queue)),
                reset_seconds=self.window_seconds,
            )

    def register_failure(self, *, key: str) -> RateLimitDecision:
        now = time.time()
        with self._lock:
            queue = self._prune(key, now)
            queue.append(now)
            if len(queue) >= self.fail_limit:
                self._blocked_until[key] = now + self.lock_seconds
                self._failures.pop(key, None)
                return self._locked(self.lock_seconds)
            return RateLimitDecision(
                allowed=True,
                remaining=self.fail_limit - len(queue),
                reset_seconds=self.window_seconds,
            )

    def register_success(self, *, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)
            self._blocked_until.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()
            self._blocked_until.clear()


AUTH_LOGIN_RATE_LIMITER = AuthLoginRateLimiter(
    fail_limit=AUTH_LOGIN_FAIL_LIMIT,
    window_seconds=AUTH_LOGIN_FAIL_WINDOW_SECONDS,
    lock_seconds=AUTH_LOGIN_LOCK_SECONDS,
)

AUTO_UPGRADE_SCHEDULER: AutoUpgradeScheduler | None = None


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def get_current_user(request: Request) -> dict[str, Any] | None:
    user = getattr(request.state, "current_user", None)
    return user if isinstance(user, dict) else None


def require_current_user(request: Request) -> dict[str, Any]:
    user = get_current_user(request)
    if user is None:
        raise_api_error(status_code=401, code="AUTH_LOGIN_REQUIRED", message="login required")
    return user


def current_user_id(request: Request) -> str:
    return str(require_current_user(request)["id"])


def build_login_rate_limiter_key(*, request: Request, email: str) -> str:
    client_host = ""
    if request.client is not None and request.client.host:
        client_host = request.client.host.strip()
    return f"{normalize_email(email)}|{client_host or 'unknown'}"


def set_error_context(request: Request, *, error_code: str, exception_type: str) -> None:
    request.state.error_code = error_code
    request.state.exception_type = exception_type


def build_error_payload(*, code: str, message: str, request_id: str) -> dict[str, str]:
    return {
        "code": code,
        "message": message,
        "requestId": request_id,
    }


def raise_api_error(
    *,
    status_code: int,
    code: str,
    message: str,
    extra: dict[str, Any] | None = None,
) -> None:
    detail: dict[str, Any] = {"code": code, "message": message}
    if isinstance(extra, dict):
        detail.update(extra)
    raise HTTPException(status_code=status_code, detail=detail)


def log_domain_event(request: Request, event: str, **fields: Any) -> None:
    logger.info(
        json.dumps(
            {"event": event, **fields, "requestId": get_request_id(request)},
            ensure_ascii=False,
        )
    )


def iso_days_ago(days: int) -> str:
    moment = datetime.now(timezone.utc) - timedelta(days=days)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


def format_profile(raw: dict[str, Any]) -> ProfileItem:
    return ProfileItem(
        id=str(raw["id"]),
        email=str(raw.get("email", "")),
        username=raw.get("username"),
        role=str(raw.get("role", Role.UNVERIFIED.value)),
        verificationStatus=str(raw.get("verification_status", VerificationStatus.NONE.value)),
        gradYear=raw.get("grad_year"),
        organization=str(raw.get("organization") or ""),
        bio=str(raw.get("bio") or ""),
        skills=str(raw.get("skills") or ""),
        hasDocument=bool(raw.get("has_document", False)),
        documentName=raw.get("document_name"),
        createdAt=str(raw.get("created_at", "")),
    )


def format_project_idea(raw: dict[str, Any]) -> ProjectIdeaItem:
    return ProjectIdeaItem(
        id=int(raw["id"]),
        title=str(raw["title"]),
        description=str(raw["description"]),
        submittedBy=str(raw.get("submitted_by") or ""),
        ownerId=str(raw.get("owner_id") or ""),
        createdAt=str(raw.get("created_at", "")),
    )


def format_field(raw: dict[str, Any]) -> FieldItem:
    return FieldItem(id=int(raw["id"]), name=str(raw["name"]), description=str(raw.get("description") or ""))


def format_interview_question(raw: dict[str, Any]) -> InterviewQuestionItem:
    field_id = raw.get("field_id")
    return InterviewQuestionItem(
        id=int(raw["id"]),
        question=str(raw["question"]),
        answer=str(raw["answer"]),
        leetcodeLink=raw.get("leetcode_link"),
        fieldId=int(field_id) if field_id is not None else None,
        fieldName=raw.get("field_name"),
        submittedBy=str(raw.get("submitted_by") or ""),
        ownerId=str(raw.get("owner_id") or ""),
        createdAt=str(raw.get("created_at", "")),
    )


def format_work_opportunity(raw: dict[str, Any]) -> WorkOpportunityItem:
    return WorkOpportunityItem(
        id=int(raw["id"]),
        title=str(raw["title"]),
        type=str(raw["type"]),
        salaryRange=str(raw.get("salary_range") or ""),
        description=str(raw["description"]),
        applyLink=str(raw["apply_link"]),
        submittedBy=str(raw.get("submitted_by") or ""),
        ownerId=str(raw.get("owner_id") or ""),
        createdAt=str(raw.get("created_at", "")),
    )


def format_group(raw: dict[str, Any]) -> GroupItem:
    return GroupItem(
        id=int(raw["id"]),
        name=str(raw["name"]),
        introduction=str(raw.get("introduction") or ""),
        projectId=raw.get("project_id"),
        ownerId=str(raw["owner_id"]),
        members=[str(item) for item in raw.get("members", [])],
        pendingRequests=[str(item) for item in raw.get("pending_requests", [])],
        createdAt=str(raw.get("created_at", "")),
    )


def format_progress(raw: dict[str, Any]) -> GroupProgressItem:
    return GroupProgressItem(
        userId=str(raw["user_id"]),
        progress=str(raw["progress"]),
        updatedAt=str(raw.get("updated_at", "")),
    )


def format_feedback(raw: dict[str, Any]) -> FeedbackItem:
    return FeedbackItem(
        id=int(raw["id"]),
        userId=str(raw["user_id"]),
        email=str(raw["email"]),
        subject=str(raw["feedback_subject"]),
        description=str(raw["feedback_desc"]),
        createdAt=str(raw.get("created_at", "")),
    )


def format_moderation_item(table: str, raw: dict[str, Any]) -> ModerationItem:
    owner_id = raw.get("owner_id") or raw.get("user_id") or ""
    return ModerationItem(
        table=table,
        id=int(raw["id"]),
        ownerId=str(owner_id),
        createdAt=str(raw.get("created_at", "")),
        preview=content_preview(raw),
        flags=scan_record(raw),
    )


def load_moderation_rows(table: str) -> list[dict[str, Any]]:
    if table in board_store.MODERATED_TABLES:
        return board_store.list_uploads(table)
    if table == "groups":
        return group_store.list_group_uploads()
    if table == "feedback":
        return feedback_store.list_feedback()
    raise_api_error(status_code=400, code="UNSUPPORTED_TABLE", message=f"unsupported table: {table}")
    return []


def delete_moderation_row(table: str, item_id: int) -> bool:
    if table in board_store.MODERATED_TABLES:
        return board_store.delete_upload(table, item_id)
    if table == "groups":
        return group_store.delete_group(item_id)
    if table == "feedback":
        return feedback_store.delete_feedback(item_id)
    raise_api_error(status_code=400, code="UNSUPPORTED_TABLE", message=f"unsupported table: {table}")
    return False


def log_request_event(
    *,
    path: str,
    method: str,
    status: int,
    duration_ms: int,
    request_id: str,
    user_id: str | None,
    error_code: str | None,
    exception_type: str | None,
) -> None:
    logger.info(
        json.dumps(
            {
                "path": path,
                "method": method,
                "status": status,
                "duration_ms": duration_ms,
                "requestId": request_id,
                "userId": user_id,
                "error_code": error_code,
                "exception_type": exception_type,
            },
            ensure_ascii=False,
        )
    )


app = FastAPI(title="Career Compass API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def start_auto_upgrade_scheduler() -> None:
    global AUTO_UPGRADE_SCHEDULER
    if not get_env_bool("CAREER_COMPASS_AUTO_UPGRADE_ENABLED", True):
        return
    AUTO_UPGRADE_SCHEDULER = AutoUpgradeScheduler(
        sweep=access.run_auto_upgrade_sweep,
        interval_seconds=get_env_int("CAREER_COMPASS_AUTO_UPGRADE_INTERVAL_SECONDS", 3600, min_value=60),
    )
    AUTO_UPGRADE_SCHEDULER.start()


@app.on_event("shutdown")
def stop_auto_upgrade_scheduler() -> None:
    global AUTO_UPGRADE_SCHEDULER
    if AUTO_UPGRADE_SCHEDULER is not None:
        AUTO_UPGRADE_SCHEDULER.stop()
        AUTO_UPGRADE_SCHEDULER = None


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())

    request.state.request_id = request_id
    request.state.error_code = None
    request.state.exception_type = None
    request.state.current_user = None

    started_at = time.perf_counter()
    is_preflight_request = request.method.upper() == "OPTIONS"

    auth_token = parse_auth_session_token(request)
    if auth_token and not is_preflight_request:
        auth_session = validate_auth_session(token=auth_token)
        if auth_session is not None:
            request.state.current_user = {
                "id": str(auth_session["user_id"]),
                "email": str(auth_session["email"]),
                "expiresAt": str(auth_session["expires_at"]),
            }
            request.state.auth_token = auth_token

    def finalize(response: Response) -> Response:
        duration_ms = int((time.perf_counter() - started_at) * 1000)
        response.headers["x-request-id"] = request_id

        current_user = get_current_user(request)
        log_request_event(
            path=request.url.path,
            method=request.method,
            status=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
            user_id=current_user["id"] if current_user else None,
            error_code=getattr(request.state, "error_code", None),
            exception_type=getattr(request.state, "exception_type", None),
        )
        return response

    if not is_preflight_request and is_login_required_path(request.url.path) and get_current_user(request) is None:
        set_error_context(request, error_code="AUTH_LOGIN_REQUIRED", exception_type="AuthLoginRequired")
        return finalize(
            JSONResponse(
                status_code=401,
                content=build_error_payload(
                    code="AUTH_LOGIN_REQUIRED",
                    message="login required",
                    request_id=request_id,
                ),
            )
        )

    response = await call_next(request)
    return finalize(response)


@app.get("/health")
def health() -> dict[str, Any]:
    scheduler = AUTO_UPGRADE_SCHEDULER
    return {
        "status": "ok",
        "autoUpgrade": {
            "running": bool(scheduler is not None and scheduler.is_running),
            "runs": scheduler.runs if scheduler is not None else 0,
        },
    }


@app.post("/api/auth/signup", response_model=AuthSignupResponse, status_code=201)
def auth_signup(payload: AuthSignupRequest, request: Request) -> AuthSignupResponse:
    if payload.username and profile_store.username_exists(payload.username):
        raise_api_error(status_code=409, code="USERNAME_TAKEN", message="username already taken")

    try:
        account = create_local_account(email=payload.email, password=payload.password)
    except ValueError as exc:
        if "already registered" in str(exc):
            raise_api_error(status_code=409, code="EMAIL_TAKEN", message="email already registered")
        raise_api_error(status_code=400, code="BAD_REQUEST", message=str(exc))

    is_admin = account["email"] in get_admin_emails()
    profile = profile_store.upsert_profile(
        user_id=account["id"],
        email=account["email"],
        role=Role.ADMIN.value if is_admin else Role.UNVERIFIED.value,
        verification_status=VerificationStatus.VERIFIED.value if is_admin else VerificationStatus.NONE.value,
        grad_year=payload.gradYear,
        username=payload.username,
    )
    log_domain_event(request, "user_signed_up", userId=account["id"], role=profile["role"])
    return AuthSignupResponse(requestId=get_request_id(request), user=format_profile(profile))


@app.post("/api/auth/login", response_model=AuthLoginResponse)
def auth_login(payload: AuthLoginRequest, request: Request, response: Response) -> AuthLoginResponse:
    limiter_key = build_login_rate_limiter_key(request=request, email=payload.email)
    pre_check = AUTH_LOGIN_RATE_LIMITER.check(key=limiter_key)
    if not pre_check.allowed:
        raise_api_error(
            status_code=429,
            code="AUTH_LOGIN_RATE_LIMITED",
            message=pre_check.message or "Too many failed login attempts",
            extra={"retryAfterSec": pre_check.reset_seconds},
        )

    user, verify_reason = verify_local_account_with_reason(email=payload.email, password=payload.password)
    if user is None:
        if verify_reason == VERIFY_REASON_ACCOUNT_INACTIVE:
            raise_api_error(status_code=403, code="AUTH_ACCOUNT_DISABLED", message="account is disabled")

        fail_decision = AUTH_LOGIN_RATE_LIMITER.register_failure(key=limiter_key)
        if not fail_decision.allowed:
            raise_api_error(
                status_code=429,
                code="AUTH_LOGIN_RATE_LIMITED",
                message=fail_decision.message or "Too many failed login attempts",
                extra={"retryAfterSec": fail_decision.reset_seconds},
            )

        raise_api_error(status_code=401, code="AUTH_INVALID_CREDENTIALS", message="invalid email or password")

    AUTH_LOGIN_RATE_LIMITER.register_success(key=limiter_key)

    upgrade = access.check_auto_upgrade(user["id"], trigger="sign_in")
    profile = access.load_user(user["id"])

    auth_session = create_auth_session(user_id=user["id"], ttl_seconds=AUTH_SESSION_TTL_SECONDS)
    response.set_cookie(
        AUTH_COOKIE_NAME,
        auth_session["token"],
        httponly=True,
        samesite="lax",
        max_age=int(auth_session["ttl_seconds"]),
    )

    return AuthLoginResponse(
        requestId=get_request_id(request),
        user=format_profile(profile),
        token=str(auth_session["token"]),
        expiresAt=str(auth_session["expires_at"]),
        autoUpgraded=bool(upgrade["upgraded"]),
    )


@app.get("/api/auth/me", response_model=AuthMeResponse)
def auth_me(request: Request) -> AuthMeResponse:
    user = require_current_user(request)
    profile = access.load_user(user["id"])
    return AuthMeResponse(
        requestId=get_request_id(request),
        user=format_profile(profile),
        expiresAt=str(user.get("expiresAt", "")),
    )


@app.post("/api/auth/logout", response_model=AuthLogoutResponse)
def auth_logout(request: Request, response: Response) -> AuthLogoutResponse:
    require_current_user(request)
    token = str(getattr(request.state, "auth_token", ""))
    revoked = revoke_auth_session(token=token)
    response.delete_cookie(AUTH_COOKIE_NAME)
    return AuthLogoutResponse(requestId=get_request_id(request), revoked=revoked)


@app.get("/api/profile", response_model=ProfileResponse)
def get_own_profile(request: Request) -> ProfileResponse:
    profile = access.load_user(current_user_id(request))
    return ProfileResponse(requestId=get_request_id(request), item=format_profile(profile))


@app.put("/api/profile", response_model=ProfileResponse)
def update_own_profile(payload: ProfileUpdateRequest, request: Request) -> ProfileResponse:
    user_id = current_user_id(request)
    access.load_user(user_id)

    provided = payload.model_dump(exclude_unset=True)
    if not provided:
        raise HTTPException(status_code=400, detail="at least one profile field must be provided")

    column_by_field = {"gradYear": "grad_year"}
    updates = {column_by_field.get(key, key): value for key, value in provided.items()}

    username = updates.get("username")
    if username and profile_store.username_exists(username, exclude_user_id=user_id):
        raise_api_error(status_code=409, code="USERNAME_TAKEN", message="username already taken")

    try:
        profile = profile_store.update_profile_fields(user_id, updates)
    except ValueError:
        raise_api_error(status_code=409, code="USERNAME_TAKEN", message="username already taken")
    if profile is None:
        raise HTTPException(status_code=404, detail="profile not found")

    return ProfileResponse(requestId=get_request_id(request), item=format_profile(profile))


@app.get("/api/profiles/{user_id}", response_model=ProfileResponse)
def get_profile(user_id: str, request: Request) -> ProfileResponse:
    profile = access.load_user(user_id)
    return ProfileResponse(requestId=get_request_id(request), item=format_profile(profile))


@app.get("/api/permissions", response_model=PermissionsResponse)
def get_permissions(request: Request) -> PermissionsResponse:
    profile = access.load_user(current_user_id(request))
    table = access.permission_table(profile)
    return PermissionsResponse(
        requestId=get_request_id(request),
        role=str(profile["role"]),
        verificationStatus=str(profile["verification_status"]),
        create=table["create"],
        apply=table["apply"],
        joinGroups=table["joinGroups"],
    )


@app.get("/api/project-ideas", response_model=ProjectIdeaListResponse)
def list_project_ideas_endpoint(request: Request) -> ProjectIdeaListResponse:
    items = [format_project_idea(row) for row in board_store.list_project_ideas()]
    return ProjectIdeaListResponse(requestId=get_request_id(request), items=items)


@app.post("/api/project-ideas", response_model=ProjectIdeaResponse, status_code=201)
def create_project_idea_endpoint(payload: ProjectIdeaCreateRequest, request: Request) -> ProjectIdeaResponse:
    item = access.create_project_idea(current_user_id(request), title=payload.title, description=payload.description)
    return ProjectIdeaResponse(requestId=get_request_id(request), item=format_project_idea(item))


@app.get("/api/fields", response_model=FieldListResponse)
def list_fields_endpoint(request: Request) -> FieldListResponse:
    items = [format_field(row) for row in board_store.list_fields()]
    return FieldListResponse(requestId=get_request_id(request), items=items)


@app.post("/api/fields", response_model=FieldResponse, status_code=201)
def create_field_endpoint(payload: FieldCreateRequest, request: Request) -> FieldResponse:
    try:
        item = access.create_field(current_user_id(request), name=payload.name, description=payload.description)
    except ValueError as exc:
        raise_api_error(status_code=409, code="FIELD_EXISTS", message=str(exc))
    return FieldResponse(requestId=get_request_id(request), item=format_field(item))


@app.get("/api/interview-questions", response_model=InterviewQuestionListResponse)
def list_interview_questions_endpoint(
    request: Request,
    field_id: int | None = Query(default=None, alias="fieldId", ge=1),
) -> InterviewQuestionListResponse:
    rows = board_store.list_interview_questions(field_id=field_id)
    return InterviewQuestionListResponse(
        requestId=get_request_id(request),
        items=[format_interview_question(row) for row in rows],
    )


@app.post("/api/interview-questions", response_model=InterviewQuestionResponse, status_code=201)
def create_interview_question_endpoint(
    payload: InterviewQuestionCreateRequest,
    request: Request,
) -> InterviewQuestionResponse:
    item = access.create_interview_question(
        current_user_id(request),
        question=payload.question,
        answer=payload.answer,
        leetcode_link=payload.leetcodeLink,
        field_id=payload.fieldId,
    )
    return InterviewQuestionResponse(requestId=get_request_id(request), item=format_interview_question(item))


@app.get("/api/work-opportunities", response_model=WorkOpportunityListResponse)
def list_work_opportunities_endpoint(
    request: Request,
    opportunity_type: Literal["job", "internship"] | None = Query(default=None, alias="type"),
) -> WorkOpportunityListResponse:
    rows = board_store.list_work_opportunities(opportunity_type=opportunity_type)
    return WorkOpportunityListResponse(
        requestId=get_request_id(request),
        items=[format_work_opportunity(row) for row in rows],
    )


@app.post("/api/work-opportunities", response_model=WorkOpportunityResponse, status_code=201)
def create_work_opportunity_endpoint(
    payload: WorkOpportunityCreateRequest,
    request: Request,
) -> WorkOpportunityResponse:
    item = access.create_work_opportunity(
        current_user_id(request),
        title=payload.title,
        opportunity_type=payload.type,
        salary_range=payload.salaryRange,
        description=payload.description,
        apply_link=payload.applyLink,
    )
    return WorkOpportunityResponse(requestId=get_request_id(request), item=format_work_opportunity(item))


@app.post("/api/work-opportunities/{opportunity_id}/apply", response_model=WorkOpportunityApplyResponse)
def apply_work_opportunity_endpoint(opportunity_id: int, request: Request) -> WorkOpportunityApplyResponse:
    opportunity = access.apply_to_opportunity(current_user_id(request), opportunity_id)
    return WorkOpportunityApplyResponse(
        requestId=get_request_id(request),
        opportunityId=int(opportunity["id"]),
        applyLink=str(opportunity["apply_link"]),
    )


@app.get("/api/groups", response_model=GroupListResponse)
def list_groups_endpoint(
    request: Request,
    project_id: int | None = Query(default=None, alias="projectId", ge=1),
) -> GroupListResponse:
    rows = group_store.list_groups(project_id=project_id)
    return GroupListResponse(requestId=get_request_id(request), items=[format_group(row) for row in rows])


@app.post("/api/groups", response_model=GroupResponse, status_code=201)
def create_group_endpoint(payload: GroupCreateRequest, request: Request) -> GroupResponse:
    group = access.create_group(
        current_user_id(request),
        name=payload.name,
        introduction=payload.introduction,
        project_id=payload.projectId,
    )
    return GroupResponse(requestId=get_request_id(request), item=format_group(group))


@app.get("/api/groups/{group_id}", response_model=GroupResponse)
def get_group_endpoint(group_id: int, request: Request) -> GroupResponse:
    return GroupResponse(requestId=get_request_id(request), item=format_group(access.load_group(group_id)))


@app.post("/api/groups/{group_id}/join", response_model=GroupResponse)
def join_group_endpoint(group_id: int, request: Request) -> GroupResponse:
    group = access.request_join(group_id, current_user_id(request))
    return GroupResponse(requestId=get_request_id(request), item=format_group(group))


@app.get("/api/groups/{group_id}/requests", response_model=ProfileListResponse)
def list_join_requests_endpoint(group_id: int, request: Request) -> ProfileListResponse:
    profiles = access.list_join_requests(group_id, actor_id=current_user_id(request))
    return ProfileListResponse(requestId=get_request_id(request), items=[format_profile(row) for row in profiles])


@app.post("/api/groups/{group_id}/requests/{user_id}/approve", response_model=GroupResponse)
def approve_join_request_endpoint(group_id: int, user_id: str, request: Request) -> GroupResponse:
    group = access.approve(group_id, user_id, actor_id=current_user_id(request))
    return GroupResponse(requestId=get_request_id(request), item=format_group(group))


@app.post("/api/groups/{group_id}/requests/{user_id}/reject", response_model=GroupResponse)
def reject_join_request_endpoint(group_id: int, user_id: str, request: Request) -> GroupResponse:
    group = access.reject(group_id, user_id, actor_id=current_user_id(request))
    return GroupResponse(requestId=get_request_id(request), item=format_group(group))


@app.get("/api/groups/{group_id}/members", response_model=ProfileListResponse)
def list_group_members_endpoint(group_id: int, request: Request) -> ProfileListResponse:
    profiles = access.list_members(group_id)
    return ProfileListResponse(requestId=get_request_id(request), items=[format_profile(row) for row in profiles])


@app.get("/api/groups/{group_id}/progress", response_model=GroupProgressListResponse)
def list_group_progress_endpoint(group_id: int, request: Request) -> GroupProgressListResponse:
    rows = access.list_progress(group_id)
    return GroupProgressListResponse(requestId=get_request_id(request), items=[format_progress(row) for row in rows])


@app.put("/api/groups/{group_id}/progress", response_model=GroupProgressResponse)
def post_group_progress_endpoint(
    group_id: int,
    payload: GroupProgressRequest,
    request: Request,
) -> GroupProgressResponse:
    row = access.post_progress(group_id, current_user_id(request), progress=payload.progress)
    return GroupProgressResponse(requestId=get_request_id(request), item=format_progress(row))


@app.post("/api/verification", response_model=VerificationStatusResponse)
def submit_verification_endpoint(payload: VerificationSubmitRequest, request: Request) -> VerificationStatusResponse:
    try:
        profile = access.submit_verification(
            current_user_id(request),
            document=payload.document,
            document_name=payload.documentName,
        )
    except ValueError as exc:
        raise_api_error(status_code=400, code="INVALID_DOCUMENT", message=str(exc))
    return VerificationStatusResponse(
        requestId=get_request_id(request),
        role=str(profile["role"]),
        verificationStatus=str(profile["verification_status"]),
        documentName=profile.get("document_name"),
        submittedAt=profile.get("document_submitted_at"),
    )


@app.get("/api/verification", response_model=VerificationStatusResponse)
def get_verification_endpoint(request: Request) -> VerificationStatusResponse:
    profile = access.load_user(current_user_id(request))
    return VerificationStatusResponse(
        requestId=get_request_id(request),
        role=str(profile["role"]),
        verificationStatus=str(profile["verification_status"]),
        documentName=profile.get("document_name"),
        submittedAt=profile.get("document_submitted_at"),
    )


@app.get("/api/admin/verifications", response_model=ProfileListResponse)
def list_pending_verifications_endpoint(request: Request) -> ProfileListResponse:
    profiles = access.list_pending_verifications(current_user_id(request))
    return ProfileListResponse(requestId=get_request_id(request), items=[format_profile(row) for row in profiles])


@app.get("/api/admin/verifications/{user_id}/document", response_model=VerificationDocumentResponse)
def get_verification_document_endpoint(user_id: str, request: Request) -> VerificationDocumentResponse:
    document = access.get_verification_document(current_user_id(request), user_id)
    return VerificationDocumentResponse(
        requestId=get_request_id(request),
        userId=str(document["user_id"]),
        documentName=document.get("document_name"),
        documentData=str(document["document_data"]),
        submittedAt=document.get("submitted_at"),
        verificationStatus=str(document["verification_status"]),
    )


@app.post("/api/admin/verifications/{user_id}/approve", response_model=ProfileResponse)
def approve_verification_endpoint(
    user_id: str,
    request: Request,
    payload: VerificationApproveRequest | None = None,
) -> ProfileResponse:
    role = payload.role if payload is not None else Role.STUDENT.value
    profile = access.approve_verification(current_user_id(request), user_id, assigned_role=role)
    return ProfileResponse(requestId=get_request_id(request), item=format_profile(profile))


@app.post("/api/admin/verifications/{user_id}/reject", response_model=ProfileResponse)
def reject_verification_endpoint(user_id: str, request: Request) -> ProfileResponse:
    profile = access.reject_verification(current_user_id(request), user_id)
    return ProfileResponse(requestId=get_request_id(request), item=format_profile(profile))


@app.post("/api/feedback", response_model=FeedbackResponse, status_code=201)
def create_feedback_endpoint(payload: FeedbackCreateRequest, request: Request) -> FeedbackResponse:
    user = require_current_user(request)
    row = feedback_store.create_feedback(
        user_id=str(user["id"]),
        email=str(user["email"]),
        subject=payload.subject,
        description=payload.description,
    )
    log_domain_event(request, "feedback_submitted", userId=str(user["id"]), feedbackId=int(row["id"]))
    return FeedbackResponse(requestId=get_request_id(request), item=format_feedback(row))


@app.get("/api/feedback", response_model=FeedbackListResponse)
def list_own_feedback_endpoint(request: Request) -> FeedbackListResponse:
    rows = feedback_store.list_feedback(user_id=current_user_id(request))
    return FeedbackListResponse(requestId=get_request_id(request), items=[format_feedback(row) for row in rows])


@app.get("/api/admin/feedback", response_model=FeedbackListResponse)
def list_all_feedback_endpoint(request: Request) -> FeedbackListResponse:
    access.require_admin(current_user_id(request))
    rows = feedback_store.list_feedback()
    return FeedbackListResponse(requestId=get_request_id(request), items=[format_feedback(row) for row in rows])


@app.post("/api/admin/auto-upgrade/run", response_model=AutoUpgradeRunResponse)
def run_auto_upgrade_endpoint(
    request: Request,
    year: int | None = Query(default=None, ge=1900, le=2100),
) -> AutoUpgradeRunResponse:
    actor_id = current_user_id(request)
    access.require_admin(actor_id)
    result = access.run_auto_upgrade_sweep(year=year)
    log_domain_event(request, "auto_upgrade_manual_run", actorId=actor_id, upgradedCount=result["upgraded_count"])
    return AutoUpgradeRunResponse(
        requestId=get_request_id(request),
        upgradedCount=int(result["upgraded_count"]),
        upgradedIds=[str(item) for item in result["upgraded_ids"]],
    )


@app.get("/api/admin/analytics", response_model=AnalyticsResponse)
def analytics_endpoint(request: Request) -> AnalyticsResponse:
    access.require_admin(current_user_id(request))
    by_role = profile_store.count_profiles_by_role()
    pending = profile_store.list_profiles(verification_status=VerificationStatus.PENDING_REVIEW.value)
    resources = {table: board_store.count_rows(table) for table in board_store.MODERATED_TABLES}
    resources["fields"] = board_store.count_rows("fields")
    resources["groups"] = group_store.count_groups()
    resources["feedback"] = feedback_store.count_feedback()
    return AnalyticsResponse(
        requestId=get_request_id(request),
        totalUsers=sum(by_role.values()),
        usersByRole={role.value: by_role.get(role.value, 0) for role in Role},
        newUsersLast7Days=profile_store.count_profiles_created_since(iso_days_ago(7)),
        newUsersLast30Days=profile_store.count_profiles_created_since(iso_days_ago(30)),
        pendingVerifications=len(pending),
        resources=resources,
    )


@app.get("/api/admin/moderation", response_model=ModerationListResponse)
def list_moderation_endpoint(
    request: Request,
    table: str | None = Query(default=None, max_length=40),
) -> ModerationListResponse:
    access.require_admin(current_user_id(request))
    tables = (table,) if table else MODERATION_TABLES
    items: list[ModerationItem] = []
    for name in tables:
        items.extend(format_moderation_item(name, row) for row in load_moderation_rows(name))
    items.sort(key=lambda item: item.createdAt, reverse=True)
    return ModerationListResponse(requestId=get_request_id(request), items=items)


@app.delete("/api/admin/moderation/{table}/{item_id}", response_model=ModerationDeleteResponse)
def delete_moderation_endpoint(table: str, item_id: int, request: Request) -> ModerationDeleteResponse:
    actor_id = current_user_id(request)
    access.require_admin(actor_id)
    if not delete_moderation_row(table, item_id):
        raise_api_error(status_code=404, code="NOT_FOUND", message=f"{table} {item_id} not found")
    log_domain_event(request, "moderation_deleted", actorId=actor_id, table=table, itemId=item_id)
    return ModerationDeleteResponse(requestId=get_request_id(request), deleted=True)


@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    set_error_context(request, error_code=exc.code, exception_type=type(exc).__name__)
    if exc.status_code >= 500:
        logger.warning(
            json.dumps(
                {"event": "store_unavailable", "message": exc.message, "requestId": get_request_id(request)},
                ensure_ascii=False,
            )
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_payload(code=exc.code, message=exc.message, request_id=get_request_id(request)),
    )


@app.exception_handler(sqlite3.Error)
async def store_error_handler(request: Request, exc: sqlite3.Error) -> JSONResponse:
    set_error_context(request, error_code="STORE_UNAVAILABLE", exception_type=type(exc).__name__)
    logger.warning(
        json.dumps(
            {"event": "store_unavailable", "message": str(exc), "requestId": get_request_id(request)},
            ensure_ascii=False,
        )
    )
    return JSONResponse(
        status_code=503,
        content=build_error_payload(
            code="STORE_UNAVAILABLE",
            message="store unavailable",
            request_id=get_request_id(request),
        ),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = get_request_id(request)

    code = ERROR_CODE_BY_STATUS.get(exc.status_code, "REQUEST_ERROR")
    message = "Request failed"
    extra: dict[str, Any] = {}

    if isinstance(exc.detail, str):
        message = exc.detail
    elif isinstance(exc.detail, dict):
        custom_code = str(exc.detail.get("code", "")).strip()
        custom_message = str(exc.detail.get("message", "")).strip()
        if custom_code:
            code = custom_code
        if custom_message:
            message = custom_message

        for key, value in exc.detail.items():
            if key in {"code", "message", "requestId"}:
                continue
            extra[key] = value

    payload: dict[str, Any] = build_error_payload(code=code, message=message, request_id=request_id)
    if extra:
        payload.update(extra)

    set_error_context(request, error_code=code, exception_type="HTTPException")
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    request_id = get_request_id(request)
    first_error = exc.errors()[0] if exc.errors() else None
    message = first_error.get("msg", "Request validation failed") if first_error else "Request validation failed"
    set_error_context(request, error_code="VALIDATION_ERROR", exception_type="RequestValidationError")
    return JSONResponse(
        status_code=422,
        content=build_error_payload(code="VALIDATION_ERROR", message=message, request_id=request_id),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, _: Exception) -> JSONResponse:
    request_id = get_request_id(request)
    set_error_context(request, error_code="INTERNAL_ERROR", exception_type="UnhandledException")
    return JSONResponse(
        status_code=500,
        content=build_error_payload(
            code="INTERNAL_ERROR",
            message="Unexpected server error",
            request_id=request_id,
        ),
    )
