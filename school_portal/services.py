"""Business rules for authentication, users, classes and coursework.

Functions here validate ownership and state, call the repository layer and
raise AppError subclasses that the HTTP layer turns into responses.
"""

import logging
import math
from datetime import datetime, timedelta, timezone

from . import repositories
from . import security
from .errors import (
    AlreadyExistsError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidStateError,
    NotFoundError,
    TooManyAttemptsError,
    UnauthorizedError,
    ValidationError,
)

LOGIN_ENDPOINT = 'login'
DEFAULT_OAUTH_SCOPE = 'openid profile email'


def _utcnow():
    return datetime.now(timezone.utc)


def public_user(user):
    """User fields that may leave the server."""
    if not user:
        return None
    return {
        'id': user['id'],
        'email': user['email'],
        'name': user['name'],
        'role': user['role'],
        'suspended': bool(user.get('suspended')),
        'has_password': bool(user.get('password_hash')),
        'last_login_at': user.get('last_login_at'),
        'created_at': user.get('created_at'),
        'updated_at': user.get('updated_at'),
    }


def build_pagination(page, limit, total_items):
    total_pages = int(math.ceil(total_items / limit)) if limit else 0
    return {
        'page': page,
        'limit': limit,
        'totalItems': total_items,
        'totalPages': total_pages,
        'hasNextPage': page < total_pages,
        'hasPrevPage': page > 1,
    }


def page_offset(page, limit):
    return (page - 1) * limit


# ==================== AUTHENTICATION ====================

def start_session(user, user_agent=None, ip_address=None):
    """Create a refresh session and return the token pair."""
    refresh_token = security.generate_refresh_token()
    repositories.create_session(
        user['id'],
        security.hash_token(refresh_token),
        _utcnow() + security.refresh_token_ttl(),
        user_agent=user_agent,
        ip_address=ip_address,
    )
    return {
        'access_token': security.generate_access_token(user['id'], user['role']),
        'refresh_token': refresh_token,
    }


def register_user(email, password, name, role='student'):
    if role == 'admin':
        raise ForbiddenError('Admin accounts can only be created by an administrator')
    if repositories.find_user_by_email(email):
        raise AlreadyExistsError('A user with this email already exists')
    user = repositories.create_user(email, security.hash_password(password), name, role)
    logging.info("User registered: %s (%s)", email, role)
    return user


def login(email, password, ip_address='', user_agent=None):
    """Check credentials and open a session. Returns (user, tokens)."""
    blocked, wait_minutes = repositories.is_login_blocked(LOGIN_ENDPOINT, email, ip_address)
    if blocked:
        logging.warning("Login blocked for %s from %s", email, ip_address)
        raise TooManyAttemptsError(wait_minutes)

    user = repositories.find_user_by_email(email)
    if not user or not security.check_password(user.get('password_hash'), password):
        repositories.register_failed_login(LOGIN_ENDPOINT, email, ip_address)
        logging.warning("Failed login for %s from %s", email, ip_address)
        raise InvalidCredentialsError('Invalid email or password')
    if user.get('suspended'):
        raise ForbiddenError('Your account has been suspended')

    repositories.clear_failed_login(LOGIN_ENDPOINT, email, ip_address)
    repositories.update_login_timestamps(user['id'])
    tokens = start_session(user, user_agent=user_agent, ip_address=ip_address)
    logging.info("User logged in: %s", email)
    return user, tokens


def logout(refresh_token):
    if refresh_token:
        repositories.delete_session(security.hash_token(refresh_token))


def refresh_session(refresh_token, rotate=True):
    """Exchange a refresh token for a new access token. Returns (user, tokens)."""
    if not refresh_token:
        raise UnauthorizedError('Refresh token required')
    token_hash = security.hash_token(refresh_token)
    session_row = repositories.find_active_session(token_hash)
    if not session_row:
        raise UnauthorizedError('Invalid or expired refresh token')

    user = repositories.find_user_by_id(session_row['user_id'])
    if not user:
        repositories.delete_session(token_hash)
        raise UnauthorizedError('User not found')
    if user.get('suspended'):
        repositories.delete_session(token_hash)
        raise ForbiddenError('Your account has been suspended')

    if rotate:
        # Only the request that actually removes the row may mint a new session.
        if not repositories.delete_session(token_hash):
            raise UnauthorizedError('Invalid or expired refresh token')
        tokens = start_session(
            user,
            user_agent=session_row.get('user_agent'),
            ip_address=session_row.get('ip_address'),
        )
    else:
        if not repositories.extend_session(token_hash, _utcnow() + security.refresh_token_ttl()):
            raise UnauthorizedError('Invalid or expired refresh token')
        tokens = {
            'access_token': security.generate_access_token(user['id'], user['role']),
            'refresh_token': refresh_token,
        }
    return user, tokens


def authenticate(access_token):
    """Resolve an access token to an active user."""
    claims = security.verify_access_token(access_token)
    user = repositories.find_user_by_id(claims['userId'])
    if not user:
        raise UnauthorizedError('User not found')
    if user.get('suspended'):
        raise ForbiddenError('Your account has been suspended')
    return user


def revoke_all_sessions(user_id):
    revoked = repositories.delete_sessions_for_user(user_id)
    logging.info("Revoked %s session(s) for user %s", revoked, user_id)
    return revoked


def get_session_count(user_id):
    return repositories.count_sessions_for_user(user_id)


def change_password(user_id, current_password, new_password, revoke_sessions=True):
    user = repositories.find_user_by_id(user_id)
    if not user:
        raise NotFoundError('User', user_id)
    if not security.check_password(user.get('password_hash'), current_password):
        raise InvalidCredentialsError('Current password is incorrect')
    repositories.update_user(user_id, {'password_hash': security.hash_password(new_password)})
    if revoke_sessions:
        revoke_all_sessions(user_id)
    logging.info("Password changed for user %s", user_id)


def request_password_reset(email):
    """Store a one-time reset token; unknown emails return None."""
    user = repositories.find_user_by_email(email)
    if not user or user.get('suspended'):
        logging.info("Password reset requested for unknown or suspended account %s", email)
        return None
    token = security.generate_reset_token()
    repositories.create_password_reset(
        user['id'],
        security.hash_token(token),
        _utcnow() + security.password_reset_ttl(),
    )
    logging.info("Password reset token issued for %s", email)
    return token


def reset_password(token, new_password):
    user_id = repositories.consume_password_reset(security.hash_token(token))
    if not user_id:
        raise UnauthorizedError('Invalid or expired reset token')
    user = repositories.update_user(user_id, {'password_hash': security.hash_password(new_password)})
    if not user:
        raise UnauthorizedError('Invalid or expired reset token')
    revoke_all_sessions(user_id)
    logging.info("Password reset completed for user %s", user_id)
    return user


# ==================== OAUTH ====================

def _oauth_tokens(token):
    token = token or {}
    expires_at = None
    if token.get('expires_at'):
        expires_at = datetime.fromtimestamp(int(token['expires_at']), tz=timezone.utc)
    elif token.get('expires_in'):
        expires_at = _utcnow() + timedelta(seconds=int(token['expires_in']))
    return {
        'access_token': token.get('access_token'),
        'refresh_token': token.get('refresh_token'),
        'expires_at': expires_at,
        'token_type': token.get('token_type') or 'Bearer',
        'scope': token.get('scope') or DEFAULT_OAUTH_SCOPE,
        'id_token': token.get('id_token'),
    }


def _profile_identity(profile):
    account_id = str((profile or {}).get('sub') or (profile or {}).get('id') or '').strip()
    email = (profile.get('email') or '').strip().lower() if profile else ''
    if not account_id or not email:
        raise ValidationError('OAuth profile is missing an account id or email')
    name = (profile.get('name') or '').strip() or email.split('@')[0]
    return account_id, email, name[:255]


def handle_oauth_login(provider, profile, token):
    """Resolve a provider login to a local user. Returns (user, is_new_user)."""
    account_id, email, name = _profile_identity(profile)
    tokens = _oauth_tokens(token)

    account = repositories.find_oauth_account(provider, account_id)
    if account:
        user = repositories.find_user_by_id(account['user_id'])
        if not user:
            repositories.delete_oauth_account(account['id'])
            raise NotFoundError('User')
        repositories.update_oauth_tokens(account['id'], tokens)
        is_new_user = False
    else:
        user = repositories.find_user_by_email(email)
        is_new_user = False
        if user and user.get('password_hash'):
            raise InvalidCredentialsError(
                'An account with this email already exists. '
                'Please log in with your password first to link your account.'
            )
        if not user:
            user = repositories.create_user(email, None, name, 'student')
            is_new_user = True
            logging.info("User created through %s login: %s", provider, email)
        repositories.create_oauth_account(user['id'], provider, account_id, tokens)
        logging.info("Linked %s account to %s", provider, email)

    if user.get('suspended'):
        raise ForbiddenError('Your account has been suspended')
    return user, is_new_user


def link_oauth_account(user_id, provider, profile, token):
    account_id, _email, _name = _profile_identity(profile)
    if repositories.find_oauth_account_for_user(user_id, provider):
        raise AlreadyExistsError(f'A {provider} account is already linked to this user')
    existing = repositories.find_oauth_account(provider, account_id)
    if existing and existing['user_id'] != user_id:
        raise AlreadyExistsError(f'This {provider} account is already linked to another user')
    if existing:
        return existing
    logging.info("Linked %s account to user %s", provider, user_id)
    return repositories.create_oauth_account(user_id, provider, account_id, _oauth_tokens(token))


def unlink_oauth_account(user_id, provider):
    account = repositories.find_oauth_account_for_user(user_id, provider)
    if not account:
        raise NotFoundError(f'{provider} account')
    user = repositories.find_user_by_id(user_id)
    if not user:
        raise NotFoundError('User', user_id)
    if not user.get('password_hash') and repositories.count_oauth_accounts_for_user(user_id) <= 1:
        raise InvalidStateError('Cannot unlink your only authentication method. Please set a password first.')
    repositories.delete_oauth_account(account['id'])
    logging.info("Unlinked %s account from user %s", provider, user_id)


def list_oauth_accounts(user_id):
    return [
        {
            'id': account['id'],
            'provider': account['provider'],
            'provider_account_id': account['provider_account_id'],
            'created_at': account.get('created_at'),
        }
        for account in repositories.list_oauth_accounts_for_user(user_id)
    ]


# ==================== USERS ====================

def get_user(user_id):
    user = repositories.find_user_by_id(user_id)
    if not user:
        raise NotFoundError('User', user_id)
    return user


def _is_last_admin(user):
    return user['role'] == 'admin' and repositories.count_users(role='admin') <= 1


def create_user(email, password, name, role, suspended=False):
    if repositories.find_user_by_email(email):
        raise AlreadyExistsError('A user with this email already exists')
    password_hash = security.hash_password(password) if password else None
    user = repositories.create_user(email, password_hash, name, role, suspended)
    logging.info("User created by admin: %s (%s)", email, role)
    return user


def update_user(user_id, updates):
    user = get_user(user_id)
    changes = dict(updates)
    email = changes.get('email')
    if email and email != user['email']:
        existing = repositories.find_user_by_email(email)
        if existing and existing['id'] != user['id']:
            raise AlreadyExistsError('A user with this email already exists')
    if changes.get('role') and changes['role'] != 'admin' and _is_last_admin(user):
        raise InvalidStateError('Cannot change the role of the last admin user')
    if 'password' in changes:
        changes['password_hash'] = security.hash_password(changes.pop('password'))
    return repositories.update_user(user_id, changes)


def delete_user(user_id, acting_user_id=None):
    user = get_user(user_id)
    if acting_user_id and user['id'] == acting_user_id:
        raise ForbiddenError('You cannot delete yourself')
    if _is_last_admin(user):
        raise InvalidStateError('Cannot delete the last admin user')
    if repositories.user_owns_records(user['id']):
        raise InvalidStateError('Cannot delete a user who still owns classes or grades')
    repositories.delete_user(user['id'])
    logging.info("User deleted: %s", user['email'])


def suspend_user(user_id, acting_user_id=None):
    user = get_user(user_id)
    if acting_user_id and user['id'] == acting_user_id:
        raise ForbiddenError('You cannot suspend yourself')
    if user.get('suspended'):
        return user
    if _is_last_admin(user):
        raise InvalidStateError('Cannot suspend the last admin user')
    updated = repositories.set_user_suspended(user['id'], True)
    repositories.delete_sessions_for_user(user['id'])
    logging.info("User suspended: %s", user['email'])
    return updated


def unsuspend_user(user_id):
    user = get_user(user_id)
    if not user.get('suspended'):
        return user
    logging.info("User unsuspended: %s", user['email'])
    return repositories.set_user_suspended(user['id'], False)


def batch_suspend_users(user_ids, acting_user_id=None):
    if acting_user_id and acting_user_id in user_ids:
        raise ForbiddenError('You cannot suspend yourself')
    users = repositories.find_users_by_ids(user_ids)
    admin_ids = {user['id'] for user in users if user['role'] == 'admin' and not user.get('suspended')}
    if admin_ids and len(admin_ids) >= repositories.count_users(role='admin', suspended=False):
        raise InvalidStateError('Cannot suspend all admin users')
    suspended = repositories.batch_suspend_users(user_ids)
    for user in users:
        repositories.delete_sessions_for_user(user['id'])
    logging.info("Batch suspended %s user(s)", suspended)
    return suspended


def search_users(role=None, suspended=None, search=None, page=1, limit=20):
    """Return (users, pagination)."""
    users, total = repositories.list_users(
        role=role,
        suspended=suspended,
        search=search,
        limit=limit,
        offset=page_offset(page, limit),
    )
    return users, build_pagination(page, limit, total)


def list_user_names(role):
    return [{'id': user['id'], 'name': user['name']} for user in repositories.list_users_by_role(role)]


# ==================== CLASSES ====================

def get_class(class_id):
    klass = repositories.find_class_by_id(class_id)
    if not klass:
        raise NotFoundError('Class', class_id)
    return klass


def get_owned_class(class_id, teacher_id):
    klass = get_class(class_id)
    if klass['teacher_id'] != teacher_id:
        raise ForbiddenError('You do not have permission to manage this class')
    return klass


def create_class(teacher_id, name, description=None):
    teacher = repositories.find_user_by_id(teacher_id)
    if not teacher or teacher['role'] != 'teacher':
        raise ForbiddenError('Only teachers can create classes')
    return repositories.create_class(name, teacher_id, description)


def update_class(class_id, teacher_id, updates):
    get_owned_class(class_id, teacher_id)
    return repositories.update_class(class_id, updates)


def delete_class(class_id, teacher_id):
    klass = get_owned_class(class_id, teacher_id)
    repositories.delete_class(class_id)
    logging.info("Class deleted: %s by %s", klass['name'], teacher_id)


def list_teacher_classes(teacher_id, page=1, limit=20):
    classes, total = repositories.list_classes_by_teacher(teacher_id, limit=limit, offset=page_offset(page, limit))
    return classes, build_pagination(page, limit, total)


def list_student_classes(student_id):
    return repositories.list_classes_for_student(student_id)


def list_all_classes():
    return repositories.list_all_classes()


def _require_student(student_id):
    student = repositories.find_user_by_id(student_id)
    if not student:
        raise NotFoundError('Student', student_id)
    if student['role'] != 'student':
        raise ValidationError('User is not a student')
    return student


def enroll_student(class_id, teacher_id, student_id):
    get_owned_class(class_id, teacher_id)
    _require_student(student_id)
    if repositories.is_student_enrolled(class_id, student_id):
        raise AlreadyExistsError('Student is already enrolled in this class')
    repositories.add_student_to_class(class_id, student_id)
    return 1


def enroll_student_by_email(class_id, teacher_id, email):
    student = repositories.find_user_by_email(email)
    if not student:
        raise NotFoundError('Student')
    return enroll_student(class_id, teacher_id, student['id'])


def enroll_students(class_id, teacher_id, student_ids):
    """Enroll every valid student; non-students and existing members are skipped."""
    get_owned_class(class_id, teacher_id)
    enrolled = set(repositories.list_enrolled_student_ids(class_id))
    eligible = [
        user['id']
        for user in repositories.find_users_by_ids(student_ids)
        if user['role'] == 'student' and user['id'] not in enrolled
    ]
    if not eligible:
        return 0
    return repositories.add_students_to_class(class_id, eligible)


def remove_student(class_id, teacher_id, student_id):
    get_owned_class(class_id, teacher_id)
    if not repositories.remove_student_from_class(class_id, student_id):
        raise NotFoundError('Enrollment')


def transfer_students(from_class_id, to_class_id, teacher_id, student_ids):
    if from_class_id == to_class_id:
        raise ValidationError('Source and destination classes must differ')
    get_owned_class(from_class_id, teacher_id)
    get_owned_class(to_class_id, teacher_id)
    return repositories.transfer_students(from_class_id, to_class_id, student_ids)


def list_class_students(class_id, teacher_id=None):
    if teacher_id:
        get_owned_class(class_id, teacher_id)
    else:
        get_class(class_id)
    return repositories.list_class_students(class_id)


def search_students(email_fragment, limit=10):
    fragment = (email_fragment or '').strip()
    if not fragment:
        raise ValidationError('Email search term is required')
    return repositories.search_students_by_email(fragment, limit=limit)


# ==================== ASSIGNMENTS ====================

def get_assignment(assignment_id):
    assignment = repositories.find_assignment_by_id(assignment_id)
    if not assignment:
        raise NotFoundError('Assignment', assignment_id)
    return assignment


def get_owned_assignment(assignment_id, teacher_id):
    assignment = get_assignment(assignment_id)
    if assignment['teacher_id'] != teacher_id:
        raise ForbiddenError('You do not have permission to manage this assignment')
    return assignment


def create_assignment(teacher_id, class_id, title, description, due_date):
    get_owned_class(class_id, teacher_id)
    return repositories.create_assignment(class_id, title, description, due_date)


def update_assignment(assignment_id, teacher_id, updates):
    get_owned_assignment(assignment_id, teacher_id)
    return repositories.update_assignment(assignment_id, updates)


def delete_assignment(assignment_id, teacher_id):
    get_owned_assignment(assignment_id, teacher_id)
    if repositories.any_graded_submission(assignment_id):
        raise InvalidStateError('Cannot delete assignment with graded submissions')
    repositories.delete_assignment(assignment_id)


def list_teacher_assignments(teacher_id, class_id=None, page=1, limit=20):
    if class_id:
        get_owned_class(class_id, teacher_id)
    assignments, total = repositories.list_assignments_by_teacher(
        teacher_id, class_id=class_id, limit=limit, offset=page_offset(page, limit)
    )
    return assignments, build_pagination(page, limit, total)


def list_class_assignments(class_id, teacher_id):
    get_owned_class(class_id, teacher_id)
    return repositories.list_assignments_by_class(class_id)


def list_student_assignments(student_id):
    return repositories.list_assignments_for_student(student_id)


def list_upcoming_assignments(class_id):
    get_class(class_id)
    return repositories.list_upcoming_assignments(class_id)


def list_overdue_assignments(student_id):
    return repositories.list_overdue_assignments(student_id)


def get_student_assignment(assignment_id, student_id):
    """Assignment plus the student's own submission and grade, if any."""
    assignment = get_assignment(assignment_id)
    if not repositories.is_student_enrolled(assignment['class_id'], student_id):
        raise ForbiddenError('You are not enrolled in this class')
    submission = repositories.find_submission(assignment_id, student_id)
    grade = repositories.find_grade_by_submission(submission['id']) if submission else None
    return assignment, submission, grade


# ==================== SUBMISSIONS ====================

def submit_assignment(assignment_id, student_id, content, file_url=None):
    assignment = get_assignment(assignment_id)
    if not repositories.is_student_enrolled(assignment['class_id'], student_id):
        raise ForbiddenError('You are not enrolled in this class')
    if repositories.find_submission(assignment_id, student_id):
        raise InvalidStateError('Assignment already submitted')
    if assignment['due_date'] < _utcnow():
        raise InvalidStateError('Cannot submit assignment after due date')
    return repositories.create_submission(assignment_id, student_id, content, file_url)


def update_submission(submission_id, student_id, updates):
    submission = repositories.find_submission_by_id(submission_id)
    if not submission:
        raise NotFoundError('Submission', submission_id)
    if submission['student_id'] != student_id:
        raise ForbiddenError('You can only update your own submissions')
    if repositories.find_grade_by_submission(submission_id):
        raise InvalidStateError('Cannot update submission after grading')
    return repositories.update_submission(submission_id, updates)


def list_assignment_submissions(assignment_id, teacher_id):
    get_owned_assignment(assignment_id, teacher_id)
    return repositories.list_submissions_by_assignment(assignment_id)


def submission_stats(assignment_id, teacher_id):
    get_owned_assignment(assignment_id, teacher_id)
    total, graded = repositories.count_submissions(assignment_id)
    return {'total': total, 'graded': graded, 'ungraded': total - graded}


# ==================== GRADES ====================

def _owned_submission(submission_id, teacher_id):
    submission = repositories.find_submission_by_id(submission_id)
    if not submission:
        raise NotFoundError('Submission', submission_id)
    if submission['teacher_id'] != teacher_id:
        raise ForbiddenError('You do not have permission to grade this submission')
    return submission


def _check_grade(grade):
    if grade is None or grade < 0 or grade > 100:
        raise ValidationError('Grade must be between 0 and 100')


def grade_submission(submission_id, teacher_id, grade, feedback=None):
    _check_grade(grade)
    _owned_submission(submission_id, teacher_id)
    return repositories.upsert_grade(submission_id, teacher_id, grade, feedback)


def update_grade(submission_id, teacher_id, grade, feedback=None):
    _check_grade(grade)
    _owned_submission(submission_id, teacher_id)
    if not repositories.find_grade_by_submission(submission_id):
        raise NotFoundError('Grade')
    return repositories.update_grade(submission_id, teacher_id, grade, feedback)


def bulk_grade_submissions(entries, teacher_id):
    """Grade several submissions; nothing is written unless every entry is valid."""
    seen = set()
    for entry in entries:
        _check_grade(entry['grade'])
        if entry['submission_id'] in seen:
            raise ValidationError('Each submission may only be graded once per request')
        seen.add(entry['submission_id'])
        _owned_submission(entry['submission_id'], teacher_id)
    return repositories.upsert_grades(entries, teacher_id)


def student_grades(student_id, graded_only=True):
    rows = repositories.list_grades_with_assignment_for_student(student_id)
    if graded_only:
        rows = [row for row in rows if row.get('grade_id')]
    return rows


def student_grade(grade_id, student_id):
    grade = repositories.find_grade_for_student(grade_id, student_id)
    if not grade:
        raise NotFoundError('Grade', grade_id)
    return grade


# ==================== STATS ====================

def average_grade(class_id=None):
    if class_id:
        get_class(class_id)
    average, count = repositories.average_grade(class_id)
    return {'average': round(average, 2), 'count': count}


def class_roster(class_id):
    klass = get_class(class_id)
    students = [{'id': row['id'], 'name': row['name']} for row in repositories.list_class_students(class_id)]
    return {
        'id': klass['id'],
        'name': klass['name'],
        'description': klass.get('description'),
        'teacher_name': klass.get('teacher_name'),
        'students': students,
    }


# ==================== BOOTSTRAP ====================

def ensure_default_admin(email, password, name='System Administrator'):
    """Create the first admin account if the email is unused; never resets a password."""
    if not email or not password:
        return None
    existing = repositories.find_user_by_email(email)
    if existing:
        if existing['role'] != 'admin':
            logging.warning(
                "DEFAULT_ADMIN_EMAIL '%s' exists with role '%s'; skipping automatic role escalation.",
                email,
                existing['role'],
            )
        return existing
    user = repositories.create_user(email, security.hash_password(password), name, 'admin')
    logging.info("Default admin user created: %s", email)
    return user
