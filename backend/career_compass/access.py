"""Role-gated access and workflow control for shared resources.

Every feature endpoint asks this module two questions: may this user create
or act on a resource, and if so, which state transition follows. Policy
checks are pure functions over profile dicts; transitions are executed as
single conditional statements against the store so concurrent sessions
converge without in-process locks.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping

from . import board_store, group_store, profile_store
from .errors import (
    AlreadyMember,
    AlreadyRequested,
    NotFound,
    NotPending,
    PermissionDenied,
    PreconditionFailed,
    guard_store,
)
from .roles import (
    ASSIGNABLE_ROLES,
    CONSUME_POLICY,
    CREATE_POLICY,
    VERIFICATION_SUBMIT_STATUSES,
    Action,
    ResourceType,
    Role,
    VerificationStatus,
    can_transition_verification,
    parse_resource_type,
    parse_role,
    parse_verification_status,
    role_of,
)

logger = logging.getLogger("career_compass.access")

DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>.*)$", re.DOTALL)
DEFAULT_DOCUMENT_MIME = "application/pdf"


def current_year() -> int:
    return datetime.now(timezone.utc).year


def _log_event(event: str, **fields: Any) -> None:
    logger.info(json.dumps({"event": event, **fields}, ensure_ascii=False, default=str))


def can_create(resource_type: ResourceType | str, user: Mapping[str, Any] | None) -> bool:
    if not user:
        return False
    kind = parse_resource_type(resource_type)
    if kind is ResourceType.VERIFICATION_REQUEST:
        status = parse_verification_status(user.get("verification_status"))
        return status in VERIFICATION_SUBMIT_STATUSES
    role = role_of(user)
    return role is not None and role in CREATE_POLICY.get(kind, frozenset())


def can_consume(
    resource_type: ResourceType | str,
    user: Mapping[str, Any] | None,
    *,
    action: Action | str = Action.VIEW,
    group: Mapping[str, Any] | None = None,
) -> bool:
    if not user:
        return False
    kind = parse_resource_type(resource_type)
    try:
        verb = Action(action)
    except ValueError:
        return False
    if verb is Action.VIEW:
        return True

    allowed_roles = CONSUME_POLICY.get((kind, verb))
    if allowed_roles is None or role_of(user) not in allowed_roles:
        return False

    if kind is ResourceType.GROUP and verb is Action.JOIN:
        if group is None:
            return False
        user_id = str(user.get("id", ""))
        if user_id == str(group.get("owner_id", "")):
            return False
        if user_id in group.get("members", []) or user_id in group.get("pending_requests", []):
            return False
    return True


def ensure_can_create(resource_type: ResourceType | str, user: Mapping[str, Any]) -> None:
    if not can_create(resource_type, user):
        kind = parse_resource_type(resource_type)
        raise PermissionDenied(
            f"role '{user.get('role')}' may not create {kind.value}",
            resource_type=kind.value,
        )


def permission_table(user: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "create": {kind.value: can_create(kind, user) for kind in ResourceType},
        "apply": can_consume(ResourceType.WORK_OPPORTUNITY, user, action=Action.APPLY),
        "joinGroups": role_of(user) is Role.STUDENT,
    }


@guard_store
def load_user(user_id: str) -> dict[str, Any]:
    profile = profile_store.fetch_profile(user_id)
    if profile is None:
        raise NotFound(f"user {user_id} not found")
    return profile


@guard_store
def load_group(group_id: int) -> dict[str, Any]:
    group = group_store.fetch_group(int(group_id))
    if group is None:
        raise NotFound(f"group {group_id} not found")
    return group


def require_admin(actor_id: str) -> dict[str, Any]:
    actor = load_user(actor_id)
    if role_of(actor) is not Role.ADMIN:
        raise PermissionDenied("admin role required")
    return actor


def _submitter_label(user: Mapping[str, Any]) -> str:
    return str(user.get("username") or user.get("email") or "")


@guard_store
def create_project_idea(user_id: str, *, title: str, description: str) -> dict[str, Any]:
    user = load_user(user_id)
    ensure_can_create(ResourceType.PROJECT_IDEA, user)
    item = board_store.create_project_idea(
        title=title,
        description=description,
        submitted_by=_submitter_label(user),
        owner_id=user_id,
    )
    _log_event("project_idea_created", userId=user_id, projectId=item["id"])
    return item


@guard_store
def create_field(user_id: str, *, name: str, description: str = "") -> dict[str, Any]:
    user = load_user(user_id)
    ensure_can_create(ResourceType.FIELD, user)
    return board_store.create_field(name=name, description=description)


@guard_store
def create_interview_question(
    user_id: str,
    *,
    question: str,
    answer: str,
    leetcode_link: str | None = None,
    field_id: int | None = None,
) -> dict[str, Any]:
    user = load_user(user_id)
    ensure_can_create(ResourceType.INTERVIEW_QUESTION, user)
    if field_id is not None and board_store.fetch_field(field_id) is None:
        raise NotFound(f"field {field_id} not found")
    item = board_store.create_interview_question(
        question=question,
        answer=answer,
        leetcode_link=leetcode_link,
        field_id=field_id,
        submitted_by=_submitter_label(user),
        owner_id=user_id,
    )
    _log_event("interview_question_created", userId=user_id, questionId=item["id"])
    return item


@guard_store
def create_work_opportunity(
    user_id: str,
    *,
    title: str,
    opportunity_type: str,
    salary_range: str,
    description: str,
    apply_link: str,
) -> dict[str, Any]:
    user = load_user(user_id)
    ensure_can_create(ResourceType.WORK_OPPORTUNITY, user)
    item = board_store.create_work_opportunity(
        title=title,
        opportunity_type=opportunity_type,
        salary_range=salary_range,
        description=description,
        apply_link=apply_link,
        submitted_by=_submitter_label(user),
        owner_id=user_id,
    )
    _log_event("work_opportunity_created", userId=user_id, opportunityId=item["id"])
    return item


@guard_store
def apply_to_opportunity(user_id: str, opportunity_id: int) -> dict[str, Any]:
    user = load_user(user_id)
    opportunity = board_store.fetch_work_opportunity(opportunity_id)
    if opportunity is None:
        raise NotFound(f"work opportunity {opportunity_id} not found")
    if not can_consume(ResourceType.WORK_OPPORTUNITY, user, action=Action.APPLY):
        raise PermissionDenied("only students may apply to work opportunities")
    _log_event("work_opportunity_apply", userId=user_id, opportunityId=opportunity_id)
    return opportunity


@guard_store
def create_group(user_id: str, *, name: str, introduction: str, project_id: int | None = None) -> dict[str, Any]:
    user = load_user(user_id)
    ensure_can_create(ResourceType.GROUP, user)
    if project_id is not None and board_store.fetch_project_idea(project_id) is None:
        raise NotFound(f"project idea {project_id} not found")
    group = group_store.create_group(
        name=name,
        introduction=introduction,
        owner_id=user_id,
        project_id=project_id,
    )
    _log_event("group_created", userId=user_id, groupId=group["id"])
    return group


@guard_store
def request_join(group_id: int, user_id: str) -> dict[str, Any]:
    group = load_group(group_id)
    user = load_user(user_id)
    if role_of(user) is not Role.STUDENT:
        raise PermissionDenied("only students may join groups")
    if user_id == group["owner_id"]:
        raise AlreadyMember(group_id=group_id, user_id=user_id)

    result = group_store.add_join_request(group_id=int(group_id), user_id=user_id)
    if result == group_store.JOIN_RESULT_GROUP_NOT_FOUND:
        raise NotFound(f"group {group_id} not found")
    if result == group_store.JOIN_RESULT_ALREADY_REQUESTED:
        raise AlreadyRequested(group_id=group_id, user_id=user_id)
    if result == group_store.JOIN_RESULT_ALREADY_MEMBER:
        raise AlreadyMember(group_id=group_id, user_id=user_id)

    _log_event("group_join_requested", groupId=int(group_id), userId=user_id)
    return load_group(group_id)


def _ensure_can_moderate(group: Mapping[str, Any], actor_id: str) -> None:
    if actor_id == group["owner_id"]:
        return
    actor = load_user(actor_id)
    if role_of(actor) is not Role.ADMIN:
        raise PermissionDenied("only the group owner or an admin may review join requests")


@guard_store
def approve(group_id: int, user_id: str, *, actor_id: str) -> dict[str, Any]:
    group = load_group(group_id)
    _ensure_can_moderate(group, actor_id)
    if not group_store.approve_join_request(group_id=int(group_id), user_id=user_id):
        raise NotPending(group_id=group_id, user_id=user_id)
    _log_event("group_join_approved", groupId=int(group_id), userId=user_id, actorId=actor_id)
    return load_group(group_id)


@guard_store
def reject(group_id: int, user_id: str, *, actor_id: str) -> dict[str, Any]:
    group = load_group(group_id)
    _ensure_can_moderate(group, actor_id)
    if not group_store.remove_join_request(group_id=int(group_id), user_id=user_id):
        raise NotPending(group_id=group_id, user_id=user_id)
    _log_event("group_join_rejected", groupId=int(group_id), userId=user_id, actorId=actor_id)
    return load_group(group_id)


@guard_store
def list_join_requests(group_id: int, *, actor_id: str) -> list[dict[str, Any]]:
    group = load_group(group_id)
    _ensure_can_moderate(group, actor_id)
    return profile_store.fetch_profiles(group["pending_requests"])


@guard_store
def list_members(group_id: int) -> list[dict[str, Any]]:
    group = load_group(group_id)
    return profile_store.fetch_profiles(group["members"])


@guard_store
def post_progress(group_id: int, user_id: str, *, progress: str) -> dict[str, Any]:
    group = load_group(group_id)
    if user_id not in group["members"]:
        raise PermissionDenied("only group members may post progress")
    return group_store.upsert_progress(group_id=int(group_id), user_id=user_id, progress=progress.strip())


@guard_store
def list_progress(group_id: int) -> list[dict[str, Any]]:
    load_group(group_id)
    return group_store.list_progress(int(group_id))


@guard_store
def check_auto_upgrade(user_id: str, *, year: int | None = None, trigger: str = "sign_in") -> dict[str, Any]:
    load_user(user_id)
    effective_year = year if year is not None else current_year()
    upgraded = profile_store.upgrade_student_to_alumni(user_id=user_id, current_year=effective_year)
    if upgraded:
        _log_event("role_auto_upgraded", userId=user_id, toRole=Role.ALUMNI.value, trigger=trigger)
    return {"upgraded": upgraded}


@guard_store
def run_auto_upgrade_sweep(*, year: int | None = None) -> dict[str, Any]:
    effective_year = year if year is not None else current_year()
    upgraded_ids: list[str] = []
    for candidate_id in profile_store.list_upgrade_candidates(current_year=effective_year):
        # A concurrent sign-in check may already have upgraded this user.
        if profile_store.upgrade_student_to_alumni(user_id=candidate_id, current_year=effective_year):
            upgraded_ids.append(candidate_id)

    if upgraded_ids:
        _log_event("role_auto_upgrade_sweep", upgradedCount=len(upgraded_ids), year=effective_year)
    return {"upgraded_count": len(upgraded_ids), "upgraded_ids": upgraded_ids}


def normalize_document(document: str) -> str:
    """Return the document as a base64 ``data:`` URL, validating the payload."""
    raw = (document or "").strip()
    match = DATA_URL_PATTERN.match(raw)
    mime = DEFAULT_DOCUMENT_MIME
    payload = raw
    if match is not None:
        mime = match.group("mime")
        payload = match.group("payload")
    payload = re.sub(r"\s+", "", payload)
    if not payload:
        raise ValueError("document is empty")
    try:
        base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("document is not valid base64") from exc
    return f"data:{mime};base64,{payload}"


@guard_store
def submit_verification(user_id: str, *, document: str, document_name: str) -> dict[str, Any]:
    user = load_user(user_id)
    if not can_create(ResourceType.VERIFICATION_REQUEST, user):
        raise PermissionDenied(
            f"verification cannot be submitted while status is {user['verification_status']}",
        )

    data_url = normalize_document(document)
    submitted = profile_store.submit_verification_document(
        user_id=user_id,
        document_data=data_url,
        document_name=document_name.strip() or "document",
        allowed_statuses=tuple(status.value for status in VERIFICATION_SUBMIT_STATUSES),
    )
    if not submitted:
        # Status moved between the read and the conditional write.
        raise PermissionDenied("verification status changed, submission not allowed")

    _log_event("verification_submitted", userId=user_id)
    return load_user(user_id)


def _decide_verification(actor_id: str, user_id: str, *, target: VerificationStatus, role: Role | None) -> dict[str, Any]:
    require_admin(actor_id)
    decided = profile_store.decide_verification(
        user_id=user_id,
        status=target.value,
        role=role.value if role is not None else None,
    )
    if not decided:
        current = profile_store.fetch_profile(user_id)
        if current is None:
            raise NotFound(f"user {user_id} not found")
        if not can_transition_verification(from_status=current["verification_status"], to_status=target):
            raise PreconditionFailed(
                f"verification is {current['verification_status']}, expected pending_review",
                verification_status=current["verification_status"],
            )
        raise PreconditionFailed("verification changed concurrently")
    return load_user(user_id)


@guard_store
def approve_verification(actor_id: str, user_id: str, assigned_role: Role | str = Role.STUDENT) -> dict[str, Any]:
    require_admin(actor_id)
    role = parse_role(assigned_role)
    if role is None or role not in ASSIGNABLE_ROLES:
        raise PreconditionFailed(f"role cannot be assigned: {assigned_role}", role=str(assigned_role))
    profile = _decide_verification(actor_id, user_id, target=VerificationStatus.VERIFIED, role=role)
    _log_event("verification_approved", userId=user_id, actorId=actor_id, role=role.value)
    return profile


@guard_store
def reject_verification(actor_id: str, user_id: str) -> dict[str, Any]:
    profile = _decide_verification(actor_id, user_id, target=VerificationStatus.REJECTED, role=None)
    _log_event("verification_rejected", userId=user_id, actorId=actor_id)
    return profile


@guard_store
def list_pending_verifications(actor_id: str) -> list[dict[str, Any]]:
    require_admin(actor_id)
    return profile_store.list_profiles(verification_status=VerificationStatus.PENDING_REVIEW.value)


@guard_store
def get_verification_document(actor_id: str, user_id: str) -> dict[str, Any]:
    require_admin(actor_id)
    document = profile_store.fetch_verification_document(user_id)
    if document is None:
        raise NotFound(f"no verification document for user {user_id}")
    return document
