"""JSON API served under /api/v0."""

import logging
import os
from datetime import date, datetime
from decimal import Decimal

from authlib.integrations.flask_client import OAuth
from flask import Blueprint, flash, jsonify, make_response, redirect, request, url_for

from . import services
from . import validation
from .errors import AppError, ServiceUnavailableError, ValidationError
from .request_auth import (
    REFRESH_COOKIE,
    clear_auth_cookies,
    client_ip,
    current_user,
    require_auth,
    require_role,
    set_auth_cookies,
)

api = Blueprint('api', __name__, url_prefix='/api/v0')
oauth = OAuth()

SECRET_FIELDS = {'password_hash', 'access_token', 'refresh_token', 'id_token', 'refresh_token_hash'}


def to_json(value):
    """Make rows JSON-safe: ISO timestamps, float grades, no secrets."""
    if isinstance(value, dict):
        return {key: to_json(item) for key, item in value.items() if key not in SECRET_FIELDS}
    if isinstance(value, (list, tuple)):
        return [to_json(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _uuid(value, label='id'):
    return validation.clean_uuid(value, label)


def api_empty_response():
    return make_response('', 204)


def _insecure_defaults():
    return os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')


@api.route('/')
def index():
    return jsonify({'message': 'School Portal API v0'})


# ==================== AUTH ====================

@api.route('/auth/register', methods=['POST'])
def register():
    data = validation.validate_register(json_body())
    user = services.register_user(data['email'], data['password'], data['name'], data['role'])
    return jsonify({'user': to_json(services.public_user(user))}), 201


@api.route('/auth/login', methods=['POST'])
def login():
    data = validation.validate_login(json_body())
    user, tokens = services.login(
        data['email'],
        data['password'],
        ip_address=client_ip(),
        user_agent=request.headers.get('User-Agent'),
    )
    response = jsonify({'user': to_json(services.public_user(user))})
    return set_auth_cookies(response, tokens)


@api.route('/auth/logout', methods=['POST'])
@require_auth
def logout():
    services.logout(request.cookies.get(REFRESH_COOKIE))
    response = api_empty_response()
    return clear_auth_cookies(response)


@api.route('/auth/refresh', methods=['POST'])
def refresh():
    token = request.cookies.get(REFRESH_COOKIE)
    from_body = not token
    if from_body:
        token = json_body().get('refreshToken')
    user, tokens = services.refresh_session(token, rotate=True)
    payload = {'user': to_json(services.public_user(user))}
    if from_body:
        payload['refreshToken'] = tokens['refresh_token']
    return set_auth_cookies(jsonify(payload), tokens)


@api.route('/auth/me')
@require_auth
def me():
    return jsonify({'user': to_json(services.public_user(current_user()))})


@api.route('/auth/change-password', methods=['POST'])
@require_auth
def change_password():
    data = validation.validate_change_password(json_body())
    services.change_password(current_user()['id'], data['current_password'], data['new_password'])
    response = jsonify({'message': 'Password changed. Please log in again.'})
    return clear_auth_cookies(response)


@api.route('/auth/password-reset/request', methods=['POST'])
def password_reset_request():
    data = validation.validate_password_reset_request(json_body())
    token = services.request_password_reset(data['email'])
    body = {'message': 'If the account exists, a password reset link has been issued.'}
    if token:
        logging.info("Password reset link: %s", url_for('reset_password', token=token, _external=True))
        if _insecure_defaults():
            body['resetToken'] = token
    return jsonify(body), 202


@api.route('/auth/password-reset/confirm', methods=['POST'])
def password_reset_confirm():
    data = validation.validate_password_reset(json_body())
    services.reset_password(data['token'], data['new_password'])
    return jsonify({'message': 'Password has been reset. Please log in.'})


@api.route('/auth/sessions')
@require_auth
def session_count():
    return jsonify({'activeSessions': services.get_session_count(current_user()['id'])})


@api.route('/auth/sessions', methods=['DELETE'])
@require_auth
def revoke_sessions():
    services.revoke_all_sessions(current_user()['id'])
    return clear_auth_cookies(api_empty_response())


def google_client():
    client = oauth.create_client('google')
    if client is None:
        raise ServiceUnavailableError('Google login is not configured')
    return client


def fetch_google_profile():
    """Exchange the authorization code; returns (profile, token)."""
    client = google_client()
    token = client.authorize_access_token()
    profile = token.get('userinfo') or client.userinfo(token=token)
    return dict(profile or {}), token


def _optional_user():
    try:
        return current_user()
    except AppError:
        return None


@api.route('/auth/oauth/google')
def google_login():
    redirect_uri = url_for('api.google_callback', _external=True)
    return google_client().authorize_redirect(redirect_uri)


@api.route('/auth/oauth/google/callback')
def google_callback():
    try:
        profile, token = fetch_google_profile()
        linking_user = _optional_user()
        if linking_user:
            services.link_oauth_account(linking_user['id'], 'google', profile, token)
            return redirect(os.environ.get('OAUTH_SUCCESS_REDIRECT') or url_for('dashboard'))
        user, is_new_user = services.handle_oauth_login('google', profile, token)
        tokens = services.start_session(
            user,
            user_agent=request.headers.get('User-Agent'),
            ip_address=client_ip(),
        )
    except AppError as exc:
        logging.warning("Google login failed: %s", exc.message)
        return redirect(url_for('login', error=exc.message))
    except Exception:
        logging.exception("Google login failed")
        return redirect(url_for('login', error='Authentication failed'))
    if is_new_user:
        flash('Welcome! Your account has been created.', 'success')
    target = os.environ.get('OAUTH_SUCCESS_REDIRECT') or url_for('dashboard')
    return set_auth_cookies(redirect(target), tokens)


@api.route('/auth/oauth/accounts')
@require_auth
def oauth_accounts():
    return jsonify({'accounts': to_json(services.list_oauth_accounts(current_user()['id']))})


@api.route('/auth/oauth/<provider>', methods=['DELETE'])
@require_auth
def unlink_oauth(provider):
    services.unlink_oauth_account(current_user()['id'], provider)
    return api_empty_response()


# ==================== ADMIN ====================

@api.route('/admin/users')
@require_role('admin')
def admin_list_users():
    query = validation.validate_user_query(request.args)
    users, pagination = services.search_users(**query)
    return jsonify({
        'users': to_json([services.public_user(user) for user in users]),
        'pagination': pagination,
    })


@api.route('/admin/users', methods=['POST'])
@require_role('admin')
def admin_create_user():
    data = validation.validate_create_user(json_body())
    user = services.create_user(**data)
    return jsonify({'user': to_json(services.public_user(user))}), 201


@api.route('/admin/users/<user_id>')
@require_role('admin')
def admin_get_user(user_id):
    user = services.get_user(_uuid(user_id, 'user id'))
    return jsonify({'user': to_json(services.public_user(user))})


@api.route('/admin/users/<user_id>', methods=['PUT'])
@require_role('admin')
def admin_update_user(user_id):
    updates = validation.validate_update_user(json_body())
    user = services.update_user(_uuid(user_id, 'user id'), updates)
    return jsonify({'user': to_json(services.public_user(user))})


@api.route('/admin/users/<user_id>', methods=['DELETE'])
@require_role('admin')
def admin_delete_user(user_id):
    services.delete_user(_uuid(user_id, 'user id'), acting_user_id=current_user()['id'])
    return api_empty_response()


@api.route('/admin/users/<user_id>/suspend', methods=['POST'])
@require_role('admin')
def admin_suspend_user(user_id):
    user = services.suspend_user(_uuid(user_id, 'user id'), acting_user_id=current_user()['id'])
    return jsonify({'user': to_json(services.public_user(user))})


@api.route('/admin/users/<user_id>/unsuspend', methods=['POST'])
@require_role('admin')
def admin_unsuspend_user(user_id):
    user = services.unsuspend_user(_uuid(user_id, 'user id'))
    return jsonify({'user': to_json(services.public_user(user))})


@api.route('/admin/users/batch-suspend', methods=['POST'])
@require_role('admin')
def admin_batch_suspend():
    user_ids = validation.validate_user_ids(json_body())
    suspended = services.batch_suspend_users(user_ids, acting_user_id=current_user()['id'])
    return jsonify({'suspended': suspended})


# ==================== TEACHER ====================

@api.route('/teacher/classes')
@require_role('teacher')
def teacher_list_classes():
    page, limit = validation.parse_pagination(request.args)
    classes, pagination = services.list_teacher_classes(current_user()['id'], page=page, limit=limit)
    return jsonify({'classes': to_json(classes), 'pagination': pagination})


@api.route('/teacher/classes', methods=['POST'])
@require_role('teacher')
def teacher_create_class():
    data = validation.validate_class(json_body())
    klass = services.create_class(current_user()['id'], data['name'], data.get('description'))
    return jsonify({'class': to_json(klass)}), 201


@api.route('/teacher/classes/<class_id>')
@require_role('teacher')
def teacher_get_class(class_id):
    class_id = _uuid(class_id, 'class id')
    teacher_id = current_user()['id']
    klass = services.get_owned_class(class_id, teacher_id)
    students = services.list_class_students(class_id, teacher_id)
    assignments = services.list_class_assignments(class_id, teacher_id)
    return jsonify({'class': to_json(klass), 'students': to_json(students), 'assignments': to_json(assignments)})


@api.route('/teacher/classes/<class_id>', methods=['PUT'])
@require_role('teacher')
def teacher_update_class(class_id):
    updates = validation.validate_class(json_body(), partial=True)
    klass = services.update_class(_uuid(class_id, 'class id'), current_user()['id'], updates)
    return jsonify({'class': to_json(klass)})


@api.route('/teacher/classes/<class_id>', methods=['DELETE'])
@require_role('teacher')
def teacher_delete_class(class_id):
    services.delete_class(_uuid(class_id, 'class id'), current_user()['id'])
    return api_empty_response()


@api.route('/teacher/classes/<class_id>/students')
@require_role('teacher')
def teacher_class_students(class_id):
    students = services.list_class_students(_uuid(class_id, 'class id'), current_user()['id'])
    return jsonify({'students': to_json(students)})


@api.route('/teacher/classes/<class_id>/students', methods=['POST'])
@require_role('teacher')
def teacher_enroll_students(class_id):
    class_id = _uuid(class_id, 'class id')
    data = json_body()
    student_ids = validation.validate_student_ids(data)
    teacher_id = current_user()['id']
    if data.get('studentIds') is not None:
        enrolled = services.enroll_students(class_id, teacher_id, student_ids)
    else:
        enrolled = services.enroll_student(class_id, teacher_id, student_ids[0])
    return jsonify({'enrolled': enrolled}), 201


@api.route('/teacher/classes/<class_id>/students/<student_id>', methods=['DELETE'])
@require_role('teacher')
def teacher_remove_student(class_id, student_id):
    services.remove_student(
        _uuid(class_id, 'class id'),
        current_user()['id'],
        _uuid(student_id, 'student id'),
    )
    return api_empty_response()


@api.route('/teacher/classes/<class_id>/transfer', methods=['POST'])
@require_role('teacher')
def teacher_transfer_students(class_id):
    data = validation.validate_transfer(json_body())
    moved = services.transfer_students(
        _uuid(class_id, 'class id'),
        data['to_class_id'],
        current_user()['id'],
        data['student_ids'],
    )
    return jsonify({'transferred': moved})


@api.route('/teacher/users/search')
@require_role('teacher')
def teacher_search_students():
    limit = validation.parse_positive_int(request.args.get('limit'), 'limit', 10, 50)
    students = services.search_students(request.args.get('email'), limit=limit)
    return jsonify({'users': to_json([services.public_user(student) for student in students])})


@api.route('/teacher/assignments')
@require_role('teacher')
def teacher_list_assignments():
    page, limit = validation.parse_pagination(request.args)
    class_id = request.args.get('classId') or request.args.get('class_id')
    assignments, pagination = services.list_teacher_assignments(
        current_user()['id'],
        class_id=_uuid(class_id, 'class id') if class_id else None,
        page=page,
        limit=limit,
    )
    return jsonify({'assignments': to_json(assignments), 'pagination': pagination})


@api.route('/teacher/assignments', methods=['POST'])
@require_role('teacher')
def teacher_create_assignment():
    data = validation.validate_assignment(json_body())
    assignment = services.create_assignment(
        current_user()['id'], data['class_id'], data['title'], data['description'], data['due_date']
    )
    return jsonify({'assignment': to_json(assignment)}), 201


@api.route('/teacher/assignments/<assignment_id>', methods=['PUT'])
@require_role('teacher')
def teacher_update_assignment(assignment_id):
    updates = validation.validate_assignment(json_body(), partial=True)
    assignment = services.update_assignment(_uuid(assignment_id, 'assignment id'), current_user()['id'], updates)
    return jsonify({'assignment': to_json(assignment)})


@api.route('/teacher/assignments/<assignment_id>', methods=['DELETE'])
@require_role('teacher')
def teacher_delete_assignment(assignment_id):
    services.delete_assignment(_uuid(assignment_id, 'assignment id'), current_user()['id'])
    return api_empty_response()


@api.route('/teacher/assignments/<assignment_id>/stats')
@require_role('teacher')
def teacher_assignment_stats(assignment_id):
    stats = services.submission_stats(_uuid(assignment_id, 'assignment id'), current_user()['id'])
    return jsonify({'stats': stats})


@api.route('/teacher/submissions')
@require_role('teacher')
def teacher_list_submissions():
    assignment_id = request.args.get('assignment_id') or request.args.get('assignmentId')
    if not assignment_id:
        raise ValidationError('assignment_id is required')
    submissions = services.list_assignment_submissions(_uuid(assignment_id, 'assignment id'), current_user()['id'])
    return jsonify({'submissions': to_json(submissions)})


@api.route('/teacher/submissions/<submission_id>/grade', methods=['POST'])
@require_role('teacher')
def teacher_grade_submission(submission_id):
    data = validation.validate_grade(json_body())
    grade = services.grade_submission(
        _uuid(submission_id, 'submission id'), current_user()['id'], data['grade'], data['feedback']
    )
    return jsonify({'grade': to_json(grade)}), 201


@api.route('/teacher/submissions/<submission_id>/grade', methods=['PUT'])
@require_role('teacher')
def teacher_update_grade(submission_id):
    data = validation.validate_grade(json_body())
    grade = services.update_grade(
        _uuid(submission_id, 'submission id'), current_user()['id'], data['grade'], data['feedback']
    )
    return jsonify({'grade': to_json(grade)})


@api.route('/teacher/grades/bulk', methods=['POST'])
@require_role('teacher')
def teacher_bulk_grade():
    entries = validation.validate_bulk_grades(json_body())
    grades = services.bulk_grade_submissions(entries, current_user()['id'])
    return jsonify({'grades': to_json(grades)}), 201


# ==================== STUDENT ====================

@api.route('/student/classes')
@require_role('student')
def student_classes():
    return jsonify({'classes': to_json(services.list_student_classes(current_user()['id']))})


@api.route('/student/assignments')
@require_role('student')
def student_assignments():
    return jsonify({'assignments': to_json(services.list_student_assignments(current_user()['id']))})


@api.route('/student/assignments/overdue')
@require_role('student')
def student_overdue_assignments():
    return jsonify({'assignments': to_json(services.list_overdue_assignments(current_user()['id']))})


@api.route('/student/assignments/<assignment_id>')
@require_role('student')
def student_assignment(assignment_id):
    assignment, submission, grade = services.get_student_assignment(
        _uuid(assignment_id, 'assignment id'), current_user()['id']
    )
    return jsonify({
        'assignment': to_json(assignment),
        'submission': to_json(submission),
        'grade': to_json(grade),
    })


@api.route('/student/submissions', methods=['POST'])
@require_role('student')
def student_submit():
    data = validation.validate_submission(json_body())
    submission = services.submit_assignment(
        data['assignment_id'], current_user()['id'], data['content'], data.get('file_url')
    )
    return jsonify({'submission': to_json(submission)}), 201


@api.route('/student/submissions/<submission_id>', methods=['PUT'])
@require_role('student')
def student_update_submission(submission_id):
    updates = validation.validate_submission(json_body(), partial=True)
    submission = services.update_submission(_uuid(submission_id, 'submission id'), current_user()['id'], updates)
    return jsonify({'submission': to_json(submission)})


@api.route('/student/grades')
@require_role('student')
def student_grades():
    return jsonify({'grades': to_json(services.student_grades(current_user()['id']))})


@api.route('/student/grades/<grade_id>')
@require_role('student')
def student_grade(grade_id):
    grade = services.student_grade(_uuid(grade_id, 'grade id'), current_user()['id'])
    return jsonify({'grade': to_json(grade)})


# ==================== STATS ====================

@api.route('/stats/average-grades')
def stats_average_grades():
    return jsonify(services.average_grade())


@api.route('/stats/average-grades/<class_id>')
def stats_class_average_grade(class_id):
    return jsonify(services.average_grade(_uuid(class_id, 'class id')))


@api.route('/stats/teacher-names')
def stats_teacher_names():
    return jsonify({'teachers': to_json(services.list_user_names('teacher'))})


@api.route('/stats/student-names')
def stats_student_names():
    return jsonify({'students': to_json(services.list_user_names('student'))})


@api.route('/stats/classes')
def stats_classes():
    classes = [
        {'id': klass['id'], 'name': klass['name'], 'teacher_name': klass.get('teacher_name'),
         'student_count': klass.get('student_count', 0)}
        for klass in services.list_all_classes()
    ]
    return jsonify({'classes': to_json(classes)})


@api.route('/stats/classes/<class_id>')
def stats_class(class_id):
    return jsonify({'class': to_json(services.class_roster(_uuid(class_id, 'class id')))})
