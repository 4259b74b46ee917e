from datetime import datetime, timedelta, timezone

import pytest

from conftest import (
    ADMIN_ID,
    ASSIGNMENT_ID,
    CLASS_ID,
    OTHER_CLASS_ID,
    OTHER_TEACHER_ID,
    STUDENT_ID,
    SUBMISSION_ID,
    TEACHER_ID,
    make_user,
)
from school_portal import repositories, security, services
from school_portal.errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidStateError,
    NotFoundError,
    TooManyAttemptsError,
    UnauthorizedError,
    ValidationError,
)


@pytest.fixture(autouse=True)
def env(base_env):
    return None


def patch_repo(monkeypatch, **funcs):
    for name, func in funcs.items():
        monkeypatch.setattr(repositories, name, func)


def owned_class(teacher_id=TEACHER_ID, class_id=CLASS_ID):
    return {"id": class_id, "name": "Biology", "teacher_id": teacher_id, "description": None, "teacher_name": "Teacher"}


def future(days=1):
    return datetime.now(timezone.utc) + timedelta(days=days)


# ==================== AUTH ====================

def test_login_blocked_raises_too_many_attempts(monkeypatch):
    patch_repo(monkeypatch, is_login_blocked=lambda *args: (True, 7))
    with pytest.raises(TooManyAttemptsError) as excinfo:
        services.login("a@school.edu", "pw", ip_address="1.2.3.4")
    assert excinfo.value.wait_minutes == 7
    assert excinfo.value.status_code == 429


def test_login_wrong_password_registers_failure(monkeypatch):
    failures = []
    user = make_user(STUDENT_ID, "student", password_hash=security.hash_password("Right!Pass1"))
    patch_repo(
        monkeypatch,
        is_login_blocked=lambda *args: (False, 0),
        find_user_by_email=lambda email: user,
        register_failed_login=lambda *args: failures.append(args),
    )
    with pytest.raises(InvalidCredentialsError, match="Invalid email or password"):
        services.login("student@school.edu", "Wrong!Pass1", ip_address="1.2.3.4")
    assert failures == [("login", "student@school.edu", "1.2.3.4")]


def test_login_unknown_email_gives_same_error(monkeypatch):
    patch_repo(
        monkeypatch,
        is_login_blocked=lambda *args: (False, 0),
        find_user_by_email=lambda email: None,
        register_failed_login=lambda *args: None,
    )
    with pytest.raises(InvalidCredentialsError, match="Invalid email or password"):
        services.login("ghost@school.edu", "whatever", ip_address="1.2.3.4")


def test_login_suspended_user_is_forbidden(monkeypatch):
    user = make_user(STUDENT_ID, "student", suspended=True, password_hash=security.hash_password("Right!Pass1"))
    patch_repo(
        monkeypatch,
        is_login_blocked=lambda *args: (False, 0),
        find_user_by_email=lambda email: user,
    )
    with pytest.raises(ForbiddenError, match="suspended"):
        services.login("student@school.edu", "Right!Pass1")


def test_login_success_opens_session_with_hashed_refresh_token(monkeypatch):
    user = make_user(TEACHER_ID, "teacher", password_hash=security.hash_password("Right!Pass1"))
    calls = {}
    patch_repo(
        monkeypatch,
        is_login_blocked=lambda *args: (False, 0),
        find_user_by_email=lambda email: user,
        clear_failed_login=lambda *args: calls.setdefault("cleared", args),
        update_login_timestamps=lambda user_id: calls.setdefault("stamped", user_id),
        create_session=lambda user_id, token_hash, expires_at, **kwargs: calls.setdefault(
            "session", (user_id, token_hash, expires_at, kwargs)
        ),
    )

    logged_in, tokens = services.login("teacher@school.edu", "Right!Pass1", ip_address="1.2.3.4", user_agent="UA")

    assert logged_in is user
    assert calls["cleared"] == ("login", "teacher@school.edu", "1.2.3.4")
    assert calls["stamped"] == TEACHER_ID
    user_id, token_hash, expires_at, kwargs = calls["session"]
    assert user_id == TEACHER_ID
    assert token_hash == security.hash_token(tokens["refresh_token"])
    assert token_hash != tokens["refresh_token"]
    assert expires_at > future(6)
    assert kwargs == {"user_agent": "UA", "ip_address": "1.2.3.4"}
    claims = security.verify_access_token(tokens["access_token"])
    assert claims == {**claims, "userId": TEACHER_ID, "role": "teacher"}


def test_refresh_session_rotates_refresh_token(monkeypatch):
    user = make_user(STUDENT_ID, "student")
    deleted, created = [], []
    patch_repo(
        monkeypatch,
        find_active_session=lambda token_hash: {"user_id": STUDENT_ID, "user_agent": "UA", "ip_address": "1.1.1.1"},
        find_user_by_id=lambda user_id: user,
        delete_session=lambda token_hash: deleted.append(token_hash) or True,
        create_session=lambda *args, **kwargs: created.append(args),
    )

    refreshed_user, tokens = services.refresh_session("old-token")

    assert refreshed_user is user
    assert deleted == [security.hash_token("old-token")]
    assert tokens["refresh_token"] != "old-token"
    assert created[0][1] == security.hash_token(tokens["refresh_token"])


def test_refresh_session_already_consumed_token_mints_nothing(monkeypatch):
    # Two requests raced on the same token and the other one deleted the row first.
    created = []
    patch_repo(
        monkeypatch,
        find_active_session=lambda token_hash: {"user_id": STUDENT_ID, "user_agent": "UA", "ip_address": "1.1.1.1"},
        find_user_by_id=lambda user_id: make_user(STUDENT_ID, "student"),
        delete_session=lambda token_hash: False,
        create_session=lambda *args, **kwargs: created.append(args),
    )
    with pytest.raises(UnauthorizedError, match="Invalid or expired refresh token"):
        services.refresh_session("old-token", rotate=True)
    assert created == []


def test_refresh_session_without_rotation_extends_and_keeps_token(monkeypatch):
    extended, created = [], []
    patch_repo(
        monkeypatch,
        find_active_session=lambda token_hash: {"user_id": TEACHER_ID},
        find_user_by_id=lambda user_id: make_user(TEACHER_ID, "teacher"),
        extend_session=lambda token_hash, expires_at: extended.append((token_hash, expires_at)) or True,
        create_session=lambda *args, **kwargs: created.append(args),
    )

    user, tokens = services.refresh_session("keep-me", rotate=False)

    assert user["id"] == TEACHER_ID
    assert tokens["refresh_token"] == "keep-me"
    assert security.verify_access_token(tokens["access_token"])["userId"] == TEACHER_ID
    assert created == []
    token_hash, expires_at = extended[0]
    assert token_hash == security.hash_token("keep-me")
    assert expires_at > future(security.refresh_token_ttl().days - 1)


def test_refresh_session_without_rotation_for_vanished_session(monkeypatch):
    patch_repo(
        monkeypatch,
        find_active_session=lambda token_hash: {"user_id": TEACHER_ID},
        find_user_by_id=lambda user_id: make_user(TEACHER_ID, "teacher"),
        extend_session=lambda token_hash, expires_at: False,
    )
    with pytest.raises(UnauthorizedError):
        services.refresh_session("gone", rotate=False)


def test_refresh_session_for_deleted_user_drops_session(monkeypatch):
    deleted = []
    patch_repo(
        monkeypatch,
        find_active_session=lambda token_hash: {"user_id": STUDENT_ID},
        find_user_by_id=lambda user_id: None,
        delete_session=lambda token_hash: deleted.append(token_hash) or True,
    )
    with pytest.raises(UnauthorizedError, match="User not found"):
        services.refresh_session("orphan")
    assert deleted == [security.hash_token("orphan")]


def test_refresh_session_unknown_token_is_unauthorized(monkeypatch):
    patch_repo(monkeypatch, find_active_session=lambda token_hash: None)
    with pytest.raises(UnauthorizedError):
        services.refresh_session("missing")
    with pytest.raises(UnauthorizedError):
        services.refresh_session("")


def test_refresh_session_for_suspended_user_drops_session(monkeypatch):
    deleted = []
    patch_repo(
        monkeypatch,
        find_active_session=lambda token_hash: {"user_id": STUDENT_ID},
        find_user_by_id=lambda user_id: make_user(STUDENT_ID, "student", suspended=True),
        delete_session=lambda token_hash: deleted.append(token_hash),
    )
    with pytest.raises(ForbiddenError):
        services.refresh_session("tok")
    assert deleted == [security.hash_token("tok")]


def test_authenticate_rejects_suspended_and_missing_users(monkeypatch):
    token = security.generate_access_token(STUDENT_ID, "student")
    patch_repo(monkeypatch, find_user_by_id=lambda user_id: make_user(STUDENT_ID, "student", suspended=True))
    with pytest.raises(ForbiddenError):
        services.authenticate(token)
    patch_repo(monkeypatch, find_user_by_id=lambda user_id: None)
    with pytest.raises(UnauthorizedError):
        services.authenticate(token)


def test_register_user_cannot_create_admin_or_duplicate(monkeypatch):
    with pytest.raises(ForbiddenError):
        services.register_user("a@school.edu", "Str0ng!Pass", "A", "admin")
    patch_repo(monkeypatch, find_user_by_email=lambda email: make_user(STUDENT_ID, "student"))
    with pytest.raises(AlreadyExistsError):
        services.register_user("student@school.edu", "Str0ng!Pass", "A", "student")


def test_register_user_hashes_password(monkeypatch):
    created = {}

    def fake_create_user(email, password_hash, name, role):
        created.update(email=email, password_hash=password_hash, name=name, role=role)
        return make_user(STUDENT_ID, role, email=email, password_hash=password_hash)

    patch_repo(monkeypatch, find_user_by_email=lambda email: None, create_user=fake_create_user)
    services.register_user("new@school.edu", "Str0ng!Pass", "New", "teacher")
    assert created["role"] == "teacher"
    assert security.check_password(created["password_hash"], "Str0ng!Pass")


def test_change_password_checks_current_and_revokes_sessions(monkeypatch):
    user = make_user(STUDENT_ID, "student", password_hash=security.hash_password("Old!Pass123"))
    updates, revoked = [], []
    patch_repo(
        monkeypatch,
        find_user_by_id=lambda user_id: user,
        update_user=lambda user_id, changes: updates.append(changes),
        delete_sessions_for_user=lambda user_id: revoked.append(user_id) or 2,
    )
    with pytest.raises(InvalidCredentialsError, match="Current password is incorrect"):
        services.change_password(STUDENT_ID, "nope", "N3w!Password")
    services.change_password(STUDENT_ID, "Old!Pass123", "N3w!Password")
    assert security.check_password(updates[0]["password_hash"], "N3w!Password")
    assert revoked == [STUDENT_ID]


def test_request_password_reset_unknown_email_returns_none(monkeypatch):
    patch_repo(monkeypatch, find_user_by_email=lambda email: None)
    assert services.request_password_reset("ghost@school.edu") is None


def test_request_password_reset_stores_hash_only(monkeypatch):
    stored = []
    patch_repo(
        monkeypatch,
        find_user_by_email=lambda email: make_user(STUDENT_ID, "student"),
        create_password_reset=lambda user_id, token_hash, expires_at: stored.append((user_id, token_hash, expires_at)),
    )
    token = services.request_password_reset("student@school.edu")
    assert stored[0][0] == STUDENT_ID
    assert stored[0][1] == security.hash_token(token)
    assert stored[0][2] < future(0) + timedelta(minutes=31)


def test_reset_password_consumes_token_and_revokes_sessions(monkeypatch):
    revoked = []
    patch_repo(
        monkeypatch,
        consume_password_reset=lambda token_hash: STUDENT_ID if token_hash == security.hash_token("tok") else None,
        update_user=lambda user_id, changes: make_user(user_id, "student"),
        delete_sessions_for_user=lambda user_id: revoked.append(user_id) or 1,
    )
    services.reset_password("tok", "N3w!Password")
    assert revoked == [STUDENT_ID]
    with pytest.raises(UnauthorizedError, match="Invalid or expired reset token"):
        services.reset_password("other", "N3w!Password")


# ==================== OAUTH ====================

GOOGLE_PROFILE = {"sub": "google-123", "email": "New.Person@Gmail.com", "name": "New Person"}


def test_oauth_login_creates_student_for_unknown_email(monkeypatch):
    linked = []
    patch_repo(
        monkeypatch,
        find_oauth_account=lambda provider, account_id: None,
        find_user_by_email=lambda email: None,
        create_user=lambda email, password_hash, name, role: make_user(
            STUDENT_ID, role, email=email, name=name, password_hash=password_hash
        ),
        create_oauth_account=lambda user_id, provider, account_id, tokens: linked.append(
            (user_id, provider, account_id, tokens)
        ),
    )

    user, is_new = services.handle_oauth_login("google", GOOGLE_PROFILE, {"access_token": "at", "expires_in": 3600})

    assert is_new is True
    assert user["email"] == "new.person@gmail.com"
    assert user["role"] == "student"
    assert user["password_hash"] is None
    user_id, provider, account_id, tokens = linked[0]
    assert (user_id, provider, account_id) == (STUDENT_ID, "google", "google-123")
    assert tokens["token_type"] == "Bearer"
    assert tokens["scope"] == "openid profile email"
    assert tokens["expires_at"] > future(0)


def test_oauth_login_refuses_to_take_over_password_account(monkeypatch):
    patch_repo(
        monkeypatch,
        find_oauth_account=lambda provider, account_id: None,
        find_user_by_email=lambda email: make_user(STUDENT_ID, "student"),
    )
    with pytest.raises(InvalidCredentialsError, match="log in with your password first"):
        services.handle_oauth_login("google", GOOGLE_PROFILE, {})


def test_oauth_login_existing_link_refreshes_tokens(monkeypatch):
    refreshed = []
    patch_repo(
        monkeypatch,
        find_oauth_account=lambda provider, account_id: {"id": "acct-1", "user_id": STUDENT_ID},
        find_user_by_id=lambda user_id: make_user(STUDENT_ID, "student", password_hash=None),
        update_oauth_tokens=lambda account_id, tokens: refreshed.append((account_id, tokens["access_token"])),
    )
    user, is_new = services.handle_oauth_login("google", GOOGLE_PROFILE, {"access_token": "fresh"})
    assert is_new is False
    assert user["id"] == STUDENT_ID
    assert refreshed == [("acct-1", "fresh")]


def test_oauth_login_links_passwordless_user_with_same_email(monkeypatch):
    linked, created = [], []
    existing = make_user(STUDENT_ID, "student", email="new.person@gmail.com", password_hash=None)
    patch_repo(
        monkeypatch,
        find_oauth_account=lambda provider, account_id: None,
        find_user_by_email=lambda email: existing,
        create_user=lambda *args: created.append(args),
        create_oauth_account=lambda user_id, provider, account_id, tokens: linked.append(
            (user_id, provider, account_id)
        ),
    )

    user, is_new = services.handle_oauth_login("google", GOOGLE_PROFILE, {"access_token": "at"})

    assert user is existing
    assert is_new is False
    assert created == []
    assert linked == [(STUDENT_ID, "google", "google-123")]


def test_oauth_login_orphan_account_is_removed(monkeypatch):
    removed = []
    patch_repo(
        monkeypatch,
        find_oauth_account=lambda provider, account_id: {"id": "acct-9", "user_id": STUDENT_ID},
        find_user_by_id=lambda user_id: None,
        delete_oauth_account=lambda account_id: removed.append(account_id),
    )
    with pytest.raises(NotFoundError):
        services.handle_oauth_login("google", GOOGLE_PROFILE, {"access_token": "at"})
    assert removed == ["acct-9"]


def test_oauth_profile_without_email_is_rejected():
    with pytest.raises(ValidationError):
        services.handle_oauth_login("google", {"sub": "1"}, {})


def test_unlink_only_login_method_is_refused(monkeypatch):
    patch_repo(
        monkeypatch,
        find_oauth_account_for_user=lambda user_id, provider: {"id": "acct-1"},
        find_user_by_id=lambda user_id: make_user(STUDENT_ID, "student", password_hash=None),
        count_oauth_accounts_for_user=lambda user_id: 1,
    )
    with pytest.raises(InvalidStateError, match="only authentication method"):
        services.unlink_oauth_account(STUDENT_ID, "google")


def test_link_oauth_account_owned_by_someone_else(monkeypatch):
    patch_repo(
        monkeypatch,
        find_oauth_account_for_user=lambda user_id, provider: None,
        find_oauth_account=lambda provider, account_id: {"id": "acct-1", "user_id": TEACHER_ID},
    )
    with pytest.raises(AlreadyExistsError, match="another user"):
        services.link_oauth_account(STUDENT_ID, "google", GOOGLE_PROFILE, {})


# ==================== USERS ====================

def test_update_user_cannot_demote_last_admin(monkeypatch):
    patch_repo(
        monkeypatch,
        find_user_by_id=lambda user_id: make_user(ADMIN_ID, "admin"),
        count_users=lambda role=None, suspended=None: 1,
    )
    with pytest.raises(InvalidStateError, match="last admin"):
        services.update_user(ADMIN_ID, {"role": "teacher"})


def test_update_user_hashes_new_password(monkeypatch):
    written = {}
    patch_repo(
        monkeypatch,
        find_user_by_id=lambda user_id: make_user(STUDENT_ID, "student"),
        update_user=lambda user_id, changes: written.update(changes) or make_user(user_id, "student"),
    )
    services.update_user(STUDENT_ID, {"password": "N3w!Password", "name": "Renamed"})
    assert "password" not in written
    assert written["name"] == "Renamed"
    assert security.check_password(written["password_hash"], "N3w!Password")


def test_delete_user_guards(monkeypatch):
    patch_repo(monkeypatch, find_user_by_id=lambda user_id: make_user(user_id, "admin"))
    with pytest.raises(ForbiddenError, match="cannot delete yourself"):
        services.delete_user(ADMIN_ID, acting_user_id=ADMIN_ID)

    patch_repo(
        monkeypatch,
        find_user_by_id=lambda user_id: make_user(user_id, "teacher"),
        user_owns_records=lambda user_id: True,
    )
    with pytest.raises(InvalidStateError, match="still owns"):
        services.delete_user(TEACHER_ID, acting_user_id=ADMIN_ID)


def test_suspend_user_revokes_sessions(monkeypatch):
    revoked = []
    patch_repo(
        monkeypatch,
        find_user_by_id=lambda user_id: make_user(user_id, "student"),
        set_user_suspended=lambda user_id, flag: make_user(user_id, "student", suspended=flag),
        delete_sessions_for_user=lambda user_id: revoked.append(user_id) or 3,
    )
    user = services.suspend_user(STUDENT_ID, acting_user_id=ADMIN_ID)
    assert user["suspended"] is True
    assert revoked == [STUDENT_ID]


def test_batch_suspend_refuses_to_suspend_every_admin(monkeypatch):
    patch_repo(
        monkeypatch,
        find_users_by_ids=lambda ids: [make_user(ADMIN_ID, "admin")],
        count_users=lambda role=None, suspended=None: 1,
    )
    with pytest.raises(InvalidStateError, match="all admin users"):
        services.batch_suspend_users([ADMIN_ID])
    with pytest.raises(ForbiddenError):
        services.batch_suspend_users([ADMIN_ID], acting_user_id=ADMIN_ID)


def test_search_users_builds_pagination(monkeypatch):
    seen = {}

    def fake_list_users(**kwargs):
        seen.update(kwargs)
        return [make_user(STUDENT_ID, "student")], 45

    patch_repo(monkeypatch, list_users=fake_list_users)
    users, pagination = services.search_users(role="student", page=2, limit=20)
    assert seen["offset"] == 20
    assert seen["limit"] == 20
    assert pagination == {
        "page": 2,
        "limit": 20,
        "totalItems": 45,
        "totalPages": 3,
        "hasNextPage": True,
        "hasPrevPage": True,
    }


def test_public_user_hides_password_hash():
    public = services.public_user(make_user(STUDENT_ID, "student"))
    assert "password_hash" not in public
    assert public["has_password"] is True


# ==================== CLASSES ====================

def test_get_owned_class_rejects_other_teacher(monkeypatch):
    patch_repo(monkeypatch, find_class_by_id=lambda class_id: owned_class(OTHER_TEACHER_ID))
    with pytest.raises(ForbiddenError):
        services.get_owned_class(CLASS_ID, TEACHER_ID)


def test_get_class_missing_is_not_found(monkeypatch):
    patch_repo(monkeypatch, find_class_by_id=lambda class_id: None)
    with pytest.raises(NotFoundError) as excinfo:
        services.get_class(CLASS_ID)
    assert excinfo.value.status_code == 404


def test_create_class_requires_teacher(monkeypatch):
    patch_repo(monkeypatch, find_user_by_id=lambda user_id: make_user(user_id, "student"))
    with pytest.raises(ForbiddenError):
        services.create_class(STUDENT_ID, "Maths")


def test_enroll_student_rejects_non_students_and_duplicates(monkeypatch):
    patch_repo(
        monkeypatch,
        find_class_by_id=lambda class_id: owned_class(),
        find_user_by_id=lambda user_id: make_user(user_id, "teacher"),
    )
    with pytest.raises(ValidationError, match="not a student"):
        services.enroll_student(CLASS_ID, TEACHER_ID, OTHER_TEACHER_ID)

    patch_repo(
        monkeypatch,
        find_user_by_id=lambda user_id: make_user(user_id, "student"),
        is_student_enrolled=lambda class_id, student_id: True,
    )
    with pytest.raises(AlreadyExistsError):
        services.enroll_student(CLASS_ID, TEACHER_ID, STUDENT_ID)


def test_enroll_students_skips_non_students_and_members(monkeypatch):
    added = []
    new_student = "0c000000-0000-4000-8000-00000000000a"
    patch_repo(
        monkeypatch,
        find_class_by_id=lambda class_id: owned_class(),
        list_enrolled_student_ids=lambda class_id: [STUDENT_ID],
        find_users_by_ids=lambda ids: [
            make_user(STUDENT_ID, "student"),
            make_user(new_student, "student"),
            make_user(TEACHER_ID, "teacher"),
        ],
        add_students_to_class=lambda class_id, ids: added.extend(ids) or len(ids),
    )
    assert services.enroll_students(CLASS_ID, TEACHER_ID, [STUDENT_ID, new_student, TEACHER_ID]) == 1
    assert added == [new_student]


def test_transfer_students_requires_distinct_owned_classes(monkeypatch):
    with pytest.raises(ValidationError):
        services.transfer_students(CLASS_ID, CLASS_ID, TEACHER_ID, [STUDENT_ID])

    classes = {CLASS_ID: owned_class(), OTHER_CLASS_ID: owned_class(OTHER_TEACHER_ID, OTHER_CLASS_ID)}
    patch_repo(monkeypatch, find_class_by_id=lambda class_id: classes[class_id])
    with pytest.raises(ForbiddenError):
        services.transfer_students(CLASS_ID, OTHER_CLASS_ID, TEACHER_ID, [STUDENT_ID])


def test_remove_student_not_enrolled(monkeypatch):
    patch_repo(
        monkeypatch,
        find_class_by_id=lambda class_id: owned_class(),
        remove_student_from_class=lambda class_id, student_id: False,
    )
    with pytest.raises(NotFoundError):
        services.remove_student(CLASS_ID, TEACHER_ID, STUDENT_ID)


# ==================== ASSIGNMENTS / SUBMISSIONS / GRADES ====================

def assignment(due_date=None, teacher_id=TEACHER_ID):
    return {
        "id": ASSIGNMENT_ID,
        "class_id": CLASS_ID,
        "teacher_id": teacher_id,
        "title": "Essay",
        "due_date": due_date or future(),
    }


def test_delete_assignment_with_grades_is_refused(monkeypatch):
    patch_repo(
        monkeypatch,
        find_assignment_by_id=lambda assignment_id: assignment(),
        any_graded_submission=lambda assignment_id: True,
    )
    with pytest.raises(InvalidStateError, match="graded submissions"):
        services.delete_assignment(ASSIGNMENT_ID, TEACHER_ID)


def test_submit_assignment_rules(monkeypatch):
    patch_repo(
        monkeypatch,
        find_assignment_by_id=lambda assignment_id: assignment(),
        is_student_enrolled=lambda class_id, student_id: False,
    )
    with pytest.raises(ForbiddenError, match="not enrolled"):
        services.submit_assignment(ASSIGNMENT_ID, STUDENT_ID, "answer")

    patch_repo(
        monkeypatch,
        is_student_enrolled=lambda class_id, student_id: True,
        find_submission=lambda assignment_id, student_id: {"id": SUBMISSION_ID},
    )
    with pytest.raises(InvalidStateError, match="already submitted"):
        services.submit_assignment(ASSIGNMENT_ID, STUDENT_ID, "answer")

    patch_repo(
        monkeypatch,
        find_assignment_by_id=lambda assignment_id: assignment(due_date=future(-1)),
        find_submission=lambda assignment_id, student_id: None,
    )
    with pytest.raises(InvalidStateError, match="after due date"):
        services.submit_assignment(ASSIGNMENT_ID, STUDENT_ID, "answer")


def test_submit_assignment_before_due_date(monkeypatch):
    created = []
    patch_repo(
        monkeypatch,
        find_assignment_by_id=lambda assignment_id: assignment(),
        is_student_enrolled=lambda class_id, student_id: True,
        find_submission=lambda assignment_id, student_id: None,
        create_submission=lambda *args: created.append(args) or {"id": SUBMISSION_ID},
    )
    services.submit_assignment(ASSIGNMENT_ID, STUDENT_ID, "answer", "https://x.example/a.pdf")
    assert created == [(ASSIGNMENT_ID, STUDENT_ID, "answer", "https://x.example/a.pdf")]


def test_update_submission_after_grading_is_refused(monkeypatch):
    patch_repo(
        monkeypatch,
        find_submission_by_id=lambda submission_id: {"id": SUBMISSION_ID, "student_id": STUDENT_ID},
        find_grade_by_submission=lambda submission_id: {"grade": 80},
    )
    with pytest.raises(InvalidStateError, match="after grading"):
        services.update_submission(SUBMISSION_ID, STUDENT_ID, {"content": "new"})
    with pytest.raises(ForbiddenError):
        services.update_submission(SUBMISSION_ID, "someone-else", {"content": "new"})


def test_get_student_assignment_requires_enrollment(monkeypatch):
    patch_repo(
        monkeypatch,
        find_assignment_by_id=lambda assignment_id: assignment(),
        is_student_enrolled=lambda class_id, student_id: False,
    )
    with pytest.raises(ForbiddenError):
        services.get_student_assignment(ASSIGNMENT_ID, STUDENT_ID)


def test_grade_submission_requires_owning_teacher(monkeypatch):
    patch_repo(
        monkeypatch,
        find_submission_by_id=lambda submission_id: {"id": SUBMISSION_ID, "teacher_id": OTHER_TEACHER_ID},
    )
    with pytest.raises(ForbiddenError):
        services.grade_submission(SUBMISSION_ID, TEACHER_ID, 90)
    with pytest.raises(ValidationError):
        services.grade_submission(SUBMISSION_ID, TEACHER_ID, 101)


def test_grade_submission_upserts(monkeypatch):
    upserts = []
    patch_repo(
        monkeypatch,
        find_submission_by_id=lambda submission_id: {"id": SUBMISSION_ID, "teacher_id": TEACHER_ID},
        upsert_grade=lambda *args: upserts.append(args) or {"grade": args[2]},
    )
    assert services.grade_submission(SUBMISSION_ID, TEACHER_ID, 95.5, "Great") == {"grade": 95.5}
    assert upserts == [(SUBMISSION_ID, TEACHER_ID, 95.5, "Great")]


def test_bulk_grade_is_all_or_nothing(monkeypatch):
    written = []
    other_submission = "0f000000-0000-4000-8000-000000000009"
    owners = {SUBMISSION_ID: TEACHER_ID, other_submission: OTHER_TEACHER_ID}
    patch_repo(
        monkeypatch,
        find_submission_by_id=lambda submission_id: {"id": submission_id, "teacher_id": owners[submission_id]},
        upsert_grades=lambda entries, teacher_id: written.append(entries) or [],
    )
    entries = [
        {"submission_id": SUBMISSION_ID, "grade": 90, "feedback": None},
        {"submission_id": other_submission, "grade": 70, "feedback": None},
    ]
    with pytest.raises(ForbiddenError):
        services.bulk_grade_submissions(entries, TEACHER_ID)
    assert written == []

    duplicate = [entries[0], dict(entries[0])]
    with pytest.raises(ValidationError, match="only be graded once"):
        services.bulk_grade_submissions(duplicate, TEACHER_ID)
    assert written == []


def test_student_grades_filters_ungraded_rows(monkeypatch):
    patch_repo(
        monkeypatch,
        list_grades_with_assignment_for_student=lambda student_id: [
            {"assignment_id": "a1", "grade_id": "g1", "grade": 80},
            {"assignment_id": "a2", "grade_id": None, "grade": None},
        ],
    )
    assert [row["assignment_id"] for row in services.student_grades(STUDENT_ID)] == ["a1"]
    assert len(services.student_grades(STUDENT_ID, graded_only=False)) == 2


# ==================== STATS / BOOTSTRAP ====================

def test_average_grade_rounds_and_checks_class(monkeypatch):
    patch_repo(monkeypatch, average_grade=lambda class_id=None: (83.33333, 3))
    assert services.average_grade() == {"average": 83.33, "count": 3}
    patch_repo(monkeypatch, find_class_by_id=lambda class_id: None)
    with pytest.raises(NotFoundError):
        services.average_grade(CLASS_ID)


def test_class_roster_returns_names_only(monkeypatch):
    patch_repo(
        monkeypatch,
        find_class_by_id=lambda class_id: owned_class(),
        list_class_students=lambda class_id: [{"id": STUDENT_ID, "name": "Stu", "email": "stu@school.edu"}],
    )
    roster = services.class_roster(CLASS_ID)
    assert roster["students"] == [{"id": STUDENT_ID, "name": "Stu"}]
    assert roster["teacher_name"] == "Teacher"


def test_ensure_default_admin_never_resets_existing_account(monkeypatch):
    existing = make_user(ADMIN_ID, "admin", email="admin@school.edu")
    patch_repo(
        monkeypatch,
        find_user_by_email=lambda email: existing,
        create_user=lambda *args: pytest.fail("should not create"),
    )
    assert services.ensure_default_admin("admin@school.edu", "Adm1n!Pass") is existing


def test_ensure_default_admin_creates_admin(monkeypatch):
    created = {}
    patch_repo(
        monkeypatch,
        find_user_by_email=lambda email: None,
        create_user=lambda email, password_hash, name, role: created.update(role=role, email=email) or created,
    )
    services.ensure_default_admin("admin@school.edu", "Adm1n!Pass")
    assert created == {"role": "admin", "email": "admin@school.edu"}
