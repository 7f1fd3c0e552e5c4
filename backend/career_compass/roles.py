from __future__ import annotations

from enum import Enum
from typing import Any, Mapping


class Role(str, Enum):
    UNVERIFIED = "unverified"
    STUDENT = "student"
    ALUMNI = "alumni"
    PROFESSOR = "professor"
    ADMIN = "admin"


class VerificationStatus(str, Enum):
    NONE = "none"
    PENDING_REVIEW = "pending_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ResourceType(str, Enum):
    PROJECT_IDEA = "project_idea"
    INTERVIEW_QUESTION = "interview_question"
    WORK_OPPORTUNITY = "work_opportunity"
    GROUP = "group"
    VERIFICATION_REQUEST = "verification_request"
    FIELD = "field"


class Action(str, Enum):
    VIEW = "view"
    APPLY = "apply"
    JOIN = "join"


CREATE_POLICY: dict[ResourceType, frozenset[Role]] = {
    ResourceType.PROJECT_IDEA: frozenset({Role.PROFESSOR}),
    ResourceType.INTERVIEW_QUESTION: frozenset({Role.PROFESSOR, Role.ALUMNI}),
    ResourceType.WORK_OPPORTUNITY: frozenset({Role.PROFESSOR, Role.ALUMNI}),
    ResourceType.GROUP: frozenset({Role.STUDENT}),
    ResourceType.FIELD: frozenset({Role.ADMIN}),
}

# Verification requests are gated on status, not role.
VERIFICATION_SUBMIT_STATUSES: frozenset[VerificationStatus] = frozenset(
    {VerificationStatus.NONE, VerificationStatus.REJECTED}
)

CONSUME_POLICY: dict[tuple[ResourceType, Action], frozenset[Role]] = {
    (ResourceType.WORK_OPPORTUNITY, Action.APPLY): frozenset({Role.STUDENT}),
    (ResourceType.GROUP, Action.JOIN): frozenset({Role.STUDENT}),
}

ASSIGNABLE_ROLES: frozenset[Role] = frozenset(
    {Role.STUDENT, Role.ALUMNI, Role.PROFESSOR, Role.ADMIN}
)

_VERIFICATION_TRANSITIONS: dict[VerificationStatus, set[VerificationStatus]] = {
    VerificationStatus.NONE: {VerificationStatus.PENDING_REVIEW},
    VerificationStatus.PENDING_REVIEW: {VerificationStatus.VERIFIED, VerificationStatus.REJECTED},
    VerificationStatus.REJECTED: {VerificationStatus.PENDING_REVIEW},
    VerificationStatus.VERIFIED: set(),
}


def parse_role(value: Any) -> Role | None:
    if isinstance(value, Role):
        return value
    raw = str(value or "").strip().lower()
    try:
        return Role(raw)
    except ValueError:
        return None


def parse_verification_status(value: Any) -> VerificationStatus:
    if isinstance(value, VerificationStatus):
        return value
    raw = str(value or "").strip().lower()
    try:
        return VerificationStatus(raw)
    except ValueError:
        return VerificationStatus.NONE


def parse_resource_type(value: Any) -> ResourceType:
    if isinstance(value, ResourceType):
        return value
    return ResourceType(str(value or "").strip().lower())


def role_of(user: Mapping[str, Any] | None) -> Role | None:
    if not user:
        return None
    return parse_role(user.get("role"))


def can_transition_verification(*, from_status: Any, to_status: Any) -> bool:
    current = parse_verification_status(from_status)
    target = parse_verification_status(to_status)
    return target in _VERIFICATION_TRANSITIONS.get(current, set())
