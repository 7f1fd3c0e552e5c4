from __future__ import annotations

import base64
import sqlite3
import threading

import pytest

from career_compass import access, group_store, profile_store
from career_compass.errors import (
    AlreadyMember,
    AlreadyRequested,
    NotFound,
    NotPending,
    PermissionDenied,
    PreconditionFailed,
    StoreUnavailable,
)
from career_compass.roles import Action, ResourceType, Role


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CAREER_COMPASS_DB_PATH", str(tmp_path / "career_compass_test.sqlite3"))
    monkeypatch.setenv("CAREER_COMPASS_AUTO_UPGRADE_ENABLED", "false")


def make_user(
    user_id: str,
    *,
    role: str = "student",
    verification_status: str = "none",
    grad_year: int | None = None,
) -> dict:
    return profile_store.upsert_profile(
        user_id=user_id,
        email=f"{user_id}@example.edu",
        role=role,
        verification_status=verification_status,
        grad_year=grad_year,
        username=user_id,
    )


def pdf_document() -> str:
    return base64.b64encode(b"%PDF-1.4 student card").decode("ascii")


EXPECTED_CREATE = {
    Role.UNVERIFIED: set(),
    Role.STUDENT: {ResourceType.GROUP},
    Role.ALUMNI: {ResourceType.INTERVIEW_QUESTION, ResourceType.WORK_OPPORTUNITY},
    Role.PROFESSOR: {
        ResourceType.PROJECT_IDEA,
        ResourceType.INTERVIEW_QUESTION,
        ResourceType.WORK_OPPORTUNITY,
    },
    Role.ADMIN: {ResourceType.FIELD},
}


@pytest.mark.parametrize("role", list(Role))
@pytest.mark.parametrize(
    "resource_type",
    [kind for kind in ResourceType if kind is not ResourceType.VERIFICATION_REQUEST],
)
def test_create_policy_covers_every_role_and_resource(role: Role, resource_type: ResourceType) -> None:
    user = {"id": "u-1", "role": role.value, "verification_status": "verified"}
    assert access.can_create(resource_type, user) is (resource_type in EXPECTED_CREATE[role])


@pytest.mark.parametrize(
    ("status", "expected"),
    [("none", True), ("rejected", True), ("pending_review", False), ("verified", False)],
)
def test_verification_request_policy_depends_on_status_only(status: str, expected: bool) -> None:
    for role in Role:
        user = {"id": "u-1", "role": role.value, "verification_status": status}
        assert access.can_create(ResourceType.VERIFICATION_REQUEST, user) is expected


def test_policy_rejects_missing_user_and_unknown_role() -> None:
    assert access.can_create(ResourceType.GROUP, None) is False
    assert access.can_create("group", {"id": "u-1", "role": "dean"}) is False
    assert access.can_consume(ResourceType.GROUP, None) is False


def test_consume_policy_for_view_apply_and_join() -> None:
    group = {"owner_id": "owner", "members": ["owner", "member"], "pending_requests": ["pending"]}
    student = {"id": "fresh", "role": "student"}

    for role in Role:
        user = {"id": "x", "role": role.value}
        assert access.can_consume(ResourceType.PROJECT_IDEA, user) is True
        assert access.can_consume(ResourceType.WORK_OPPORTUNITY, user, action=Action.APPLY) is (role is Role.STUDENT)

    assert access.can_consume(ResourceType.GROUP, student, action="join", group=group) is True
    assert access.can_consume(ResourceType.GROUP, {"id": "owner", "role": "student"}, action="join", group=group) is False
    assert access.can_consume(ResourceType.GROUP, {"id": "member", "role": "student"}, action="join", group=group) is False
    assert access.can_consume(ResourceType.GROUP, {"id": "pending", "role": "student"}, action="join", group=group) is False
    assert access.can_consume(ResourceType.GROUP, {"id": "fresh", "role": "alumni"}, action="join", group=group) is False
    assert access.can_consume(ResourceType.GROUP, student, action="join") is False


def test_consume_rejects_unknown_actions() -> None:
    student = {"id": "fresh", "role": "student"}
    admin = {"id": "root", "role": "admin"}

    assert access.can_consume(ResourceType.GROUP, student, action="moderate") is False
    assert access.can_consume("group", admin, action="delete") is False
    assert access.can_consume(ResourceType.WORK_OPPORTUNITY, student, action="") is False


def test_creation_denied_without_write() -> None:
    make_user("alum", role="alumni")

    with pytest.raises(PermissionDenied):
        access.create_project_idea("alum", title="Compilers", description="Build one")
    with pytest.raises(PermissionDenied):
        access.create_group("alum", name="Study club", introduction="")

    assert group_store.list_groups() == []


def test_permission_table_for_student() -> None:
    student = make_user("stu")
    table = access.permission_table(student)

    assert table["create"]["group"] is True
    assert table["create"]["project_idea"] is False
    assert table["create"]["verification_request"] is True
    assert table["apply"] is True
    assert table["joinGroups"] is True


def test_end_to_end_join_scenario() -> None:
    make_user("owner-b")
    make_user("student-a")
    group = access.create_group("owner-b", name="Systems reading group", introduction="OS papers weekly")
    assert group["members"] == ["owner-b"]
    assert group["pending_requests"] == []

    after_request = access.request_join(group["id"], "student-a")
    assert after_request["pending_requests"] == ["student-a"]
    assert after_request["members"] == ["owner-b"]

    after_approve = access.approve(group["id"], "student-a", actor_id="owner-b")
    assert after_approve["members"] == ["owner-b", "student-a"]
    assert after_approve["pending_requests"] == []

    with pytest.raises(AlreadyMember):
        access.request_join(group["id"], "student-a")


def test_duplicate_request_and_owner_request() -> None:
    make_user("owner")
    make_user("joiner")
    group = access.create_group("owner", name="ML club", introduction="")

    access.request_join(group["id"], "joiner")
    with pytest.raises(AlreadyRequested):
        access.request_join(group["id"], "joiner")
    with pytest.raises(AlreadyMember):
        access.request_join(group["id"], "owner")

    state = access.load_group(group["id"])
    assert state["pending_requests"] == ["joiner"]
    assert state["members"] == ["owner"]


def test_request_join_errors() -> None:
    make_user("owner")
    make_user("prof", role="professor")
    group = access.create_group("owner", name="Algorithms", introduction="")

    with pytest.raises(NotFound):
        access.request_join(9999, "owner")
    with pytest.raises(NotFound):
        access.request_join(group["id"], "ghost")
    with pytest.raises(PermissionDenied):
        access.request_join(group["id"], "prof")


def test_approve_and_reject_never_requested_leave_state_unchanged() -> None:
    make_user("owner")
    make_user("bystander")
    group = access.create_group("owner", name="Databases", introduction="")
    before = access.load_group(group["id"])

    with pytest.raises(NotPending):
        access.approve(group["id"], "bystander", actor_id="owner")
    with pytest.raises(NotPending):
        access.reject(group["id"], "bystander", actor_id="owner")

    after = access.load_group(group["id"])
    assert after["members"] == before["members"]
    assert after["pending_requests"] == before["pending_requests"]


def test_reject_returns_user_to_non_member_and_allows_new_request() -> None:
    make_user("owner")
    make_user("joiner")
    group = access.create_group("owner", name="Robotics", introduction="")

    access.request_join(group["id"], "joiner")
    rejected = access.reject(group["id"], "joiner", actor_id="owner")
    assert rejected["pending_requests"] == []
    assert "joiner" not in rejected["members"]

    with pytest.raises(NotPending):
        access.reject(group["id"], "joiner", actor_id="owner")

    again = access.request_join(group["id"], "joiner")
    assert again["pending_requests"] == ["joiner"]


def test_only_owner_or_admin_reviews_requests() -> None:
    make_user("owner")
    make_user("joiner")
    make_user("other")
    make_user("root", role="admin")
    group = access.create_group("owner", name="Security", introduction="")
    access.request_join(group["id"], "joiner")

    with pytest.raises(PermissionDenied):
        access.approve(group["id"], "joiner", actor_id="other")
    with pytest.raises(PermissionDenied):
        access.list_join_requests(group["id"], actor_id="other")
    assert access.load_group(group["id"])["pending_requests"] == ["joiner"]

    pending = access.list_join_requests(group["id"], actor_id="root")
    assert [item["id"] for item in pending] == ["joiner"]

    approved = access.approve(group["id"], "joiner", actor_id="root")
    assert approved["members"] == ["owner", "joiner"]


def test_membership_states_stay_exclusive_through_workflow() -> None:
    make_user("owner")
    make_user("a")
    make_user("b")
    group = access.create_group("owner", name="Graphics", introduction="")
    group_id = group["id"]

    def assert_exclusive() -> None:
        state = access.load_group(group_id)
        assert not set(state["members"]) & set(state["pending_requests"])

    for step in (
        lambda: access.request_join(group_id, "a"),
        lambda: access.request_join(group_id, "b"),
        lambda: access.approve(group_id, "a", actor_id="owner"),
        lambda: access.reject(group_id, "b", actor_id="owner"),
        lambda: access.request_join(group_id, "b"),
        lambda: access.approve(group_id, "b", actor_id="owner"),
    ):
        step()
        assert_exclusive()

    assert access.load_group(group_id)["members"] == ["owner", "a", "b"]


def test_concurrent_joins_by_different_users_all_land() -> None:
    make_user("owner")
    joiners = [f"student-{index}" for index in range(8)]
    for user_id in joiners:
        make_user(user_id)
    group = access.create_group("owner", name="Distributed systems", introduction="")

    errors: list[Exception] = []

    def join(user_id: str) -> None:
        try:
            access.request_join(group["id"], user_id)
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=join, args=(user_id,)) for user_id in joiners]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(access.load_group(group["id"])["pending_requests"]) == sorted(joiners)


def test_concurrent_duplicate_requests_register_once() -> None:
    make_user("owner")
    make_user("joiner")
    group = access.create_group("owner", name="Networks", introduction="")

    outcomes: list[str] = []
    lock = threading.Lock()

    def join() -> None:
        try:
            access.request_join(group["id"], "joiner")
            result = "ok"
        except AlreadyRequested:
            result = "duplicate"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=join) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("duplicate") == 5
    assert access.load_group(group["id"])["pending_requests"] == ["joiner"]


def test_progress_is_member_only_and_upserted() -> None:
    make_user("owner")
    make_user("outsider")
    group = access.create_group("owner", name="Capstone", introduction="")

    with pytest.raises(PermissionDenied):
        access.post_progress(group["id"], "outsider", progress="draft")

    access.post_progress(group["id"], "owner", progress="wrote the outline")
    access.post_progress(group["id"], "owner", progress="finished chapter 1")
    rows = access.list_progress(group["id"])
    assert [(row["user_id"], row["progress"]) for row in rows] == [("owner", "finished chapter 1")]


def test_auto_upgrade_is_idempotent() -> None:
    make_user("grad", grad_year=2022)

    assert access.check_auto_upgrade("grad", year=2024) == {"upgraded": True}
    assert access.load_user("grad")["role"] == "alumni"
    assert access.check_auto_upgrade("grad", year=2024) == {"upgraded": False}
    assert access.load_user("grad")["role"] == "alumni"


@pytest.mark.parametrize(
    ("role", "grad_year"),
    [("student", 2024), ("student", 2030), ("student", None), ("professor", 2001), ("unverified", 2001)],
)
def test_auto_upgrade_skips_ineligible_users(role: str, grad_year: int | None) -> None:
    make_user("someone", role=role, grad_year=grad_year)

    assert access.check_auto_upgrade("someone", year=2024) == {"upgraded": False}
    assert access.load_user("someone")["role"] == role


def test_auto_upgrade_missing_user() -> None:
    with pytest.raises(NotFound):
        access.check_auto_upgrade("ghost", year=2024)


def test_auto_upgrade_sweep_batches_and_converges() -> None:
    make_user("old-1", grad_year=2019)
    make_user("old-2", grad_year=2023)
    make_user("current", grad_year=2024)
    make_user("prof", role="professor", grad_year=1990)

    first = access.run_auto_upgrade_sweep(year=2024)
    assert first["upgraded_count"] == 2
    assert sorted(first["upgraded_ids"]) == ["old-1", "old-2"]

    # A sign-in check racing the sweep finds nothing left to do.
    assert access.check_auto_upgrade("old-1", year=2024) == {"upgraded": False}

    second = access.run_auto_upgrade_sweep(year=2024)
    assert second == {"upgraded_count": 0, "upgraded_ids": []}
    assert access.load_user("current")["role"] == "student"
    assert access.load_user("prof")["role"] == "professor"


def test_verification_submit_then_approve_assigns_role() -> None:
    make_user("applicant", role="unverified")
    make_user("root", role="admin")

    submitted = access.submit_verification("applicant", document=pdf_document(), document_name="id.pdf")
    assert submitted["verification_status"] == "pending_review"
    assert submitted["has_document"] is True

    with pytest.raises(PermissionDenied):
        access.submit_verification("applicant", document=pdf_document(), document_name="again.pdf")

    assert [item["id"] for item in access.list_pending_verifications("root")] == ["applicant"]
    document = access.get_verification_document("root", "applicant")
    assert document["document_data"].startswith("data:application/pdf;base64,")

    approved = access.approve_verification("root", "applicant", assigned_role="alumni")
    assert approved["verification_status"] == "verified"
    assert approved["role"] == "alumni"

    with pytest.raises(PreconditionFailed):
        access.approve_verification("root", "applicant", assigned_role="professor")
    unchanged = access.load_user("applicant")
    assert unchanged["role"] == "alumni"
    assert unchanged["verification_status"] == "verified"


def test_verification_reject_keeps_role_and_allows_resubmission() -> None:
    make_user("applicant", role="unverified")
    make_user("root", role="admin")
    access.submit_verification("applicant", document=pdf_document(), document_name="id.pdf")

    rejected = access.reject_verification("root", "applicant")
    assert rejected["verification_status"] == "rejected"
    assert rejected["role"] == "unverified"

    with pytest.raises(PreconditionFailed):
        access.reject_verification("root", "applicant")

    resubmitted = access.submit_verification(
        "applicant",
        document=f"data:image/png;base64,{pdf_document()}",
        document_name="card.png",
    )
    assert resubmitted["verification_status"] == "pending_review"
    document = access.get_verification_document("root", "applicant")
    assert document["document_data"].startswith("data:image/png;base64,")


def test_verification_decisions_are_admin_only() -> None:
    make_user("applicant", role="unverified")
    make_user("prof", role="professor")
    make_user("root", role="admin")
    access.submit_verification("applicant", document=pdf_document(), document_name="id.pdf")

    with pytest.raises(PermissionDenied):
        access.approve_verification("prof", "applicant")
    with pytest.raises(PermissionDenied):
        access.list_pending_verifications("prof")
    assert access.load_user("applicant")["verification_status"] == "pending_review"

    with pytest.raises(PreconditionFailed):
        access.approve_verification("root", "applicant", assigned_role="unverified")
    with pytest.raises(NotFound):
        access.approve_verification("root", "ghost")

    approved = access.approve_verification("root", "applicant")
    assert approved["role"] == "student"


def test_non_admin_with_invalid_role_is_denied_before_role_check() -> None:
    make_user("applicant", role="unverified")
    make_user("stu")
    access.submit_verification("applicant", document=pdf_document(), document_name="id.pdf")

    for assigned_role in ("unverified", "wizard"):
        with pytest.raises(PermissionDenied):
            access.approve_verification("stu", "applicant", assigned_role=assigned_role)

    applicant = access.load_user("applicant")
    assert applicant["verification_status"] == "pending_review"
    assert applicant["role"] == "unverified"


def test_verification_never_submitted_is_precondition_error() -> None:
    make_user("fresh", role="unverified")
    make_user("root", role="admin")

    with pytest.raises(PreconditionFailed):
        access.approve_verification("root", "fresh")
    with pytest.raises(NotFound):
        access.get_verification_document("root", "fresh")


def test_invalid_document_is_rejected_before_write() -> None:
    make_user("applicant", role="unverified")

    with pytest.raises(ValueError):
        access.submit_verification("applicant", document="not base64 !!", document_name="id.pdf")
    assert access.load_user("applicant")["verification_status"] == "none"


def test_work_opportunity_apply_is_student_only() -> None:
    make_user("alum", role="alumni")
    make_user("stu")
    item = access.create_work_opportunity(
        "alum",
        title="Backend intern",
        opportunity_type="internship",
        salary_range="$30/h",
        description="Python services",
        apply_link="https://jobs.example.com/42",
    )

    assert access.apply_to_opportunity("stu", item["id"])["apply_link"] == "https://jobs.example.com/42"
    with pytest.raises(PermissionDenied):
        access.apply_to_opportunity("alum", item["id"])
    with pytest.raises(NotFound):
        access.apply_to_opportunity("stu", 4040)


def test_interview_question_requires_existing_field() -> None:
    make_user("prof", role="professor")
    make_user("root", role="admin")
    field = access.create_field("root", name="Backend")

    item = access.create_interview_question("prof", question="What is a B-tree?", answer="...", field_id=field["id"])
    assert item["field_id"] == field["id"]
    with pytest.raises(NotFound):
        access.create_interview_question("prof", question="Q", answer="A", field_id=999)


def test_store_failure_surfaces_as_store_unavailable(monkeypatch) -> None:
    def broken_fetch(*_args, **_kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(profile_store, "fetch_profile", broken_fetch)

    with pytest.raises(StoreUnavailable) as exc_info:
        access.check_auto_upgrade("anyone", year=2024)
    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
    assert exc_info.value.status_code == 503
