"""
School Portal - Flask application

Serves the JSON API (see api.py) and the server-rendered pages for admins,
teachers and students. Pages and API share the same JWT cookies; a page
request whose access token has expired is silently refreshed.
"""

import logging
import os
from datetime import datetime, timezone

from dotenv import load_dotenv
from flask import Flask, flash, g, jsonify, redirect, render_template, request, url_for
from flask_migrate import Migrate
from flask_wtf.csrf import CSRFError, CSRFProtect
from werkzeug.exceptions import HTTPException

from . import security
from . import services
from . import validation
from .api import api, oauth
from .db import init_db
from .errors import AppError
from .request_auth import (
    ACCESS_COOKIE,
    REFRESH_COOKIE,
    clear_auth_cookies,
    client_ip,
    set_auth_cookies,
)

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'

JWT_SECRET = os.environ.get('JWT_SECRET', '').strip()
if not ALLOW_INSECURE_DEFAULTS:
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET is required in production. Set JWT_SECRET or enable ALLOW_INSECURE_DEFAULTS for local development.")
    if len(JWT_SECRET) < 32:
        raise RuntimeError("JWT_SECRET is too short. Use at least 32 characters in production.")

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")

DEFAULT_ADMIN_EMAIL = validation.normalize_email(os.environ.get('DEFAULT_ADMIN_EMAIL', 'admin@school.edu'))
DEFAULT_ADMIN_PASSWORD = os.environ.get('DEFAULT_ADMIN_PASSWORD', '').strip()
if DEFAULT_ADMIN_PASSWORD and security.password_problems(DEFAULT_ADMIN_PASSWORD):
    raise RuntimeError("DEFAULT_ADMIN_PASSWORD does not meet the password policy: " + '; '.join(security.password_problems(DEFAULT_ADMIN_PASSWORD)))

GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID', '').strip()
GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET', '').strip()

# Set up logging
logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'),
                    level=os.environ.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO',
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Initialize CSRF Protection; the JSON API authenticates with cookies + SameSite instead.
csrf = CSRFProtect(app)
csrf.exempt(api)
app.register_blueprint(api)

migrate = Migrate(app, None, directory='migrations')

oauth.init_app(app)
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth.register(
        name='google',
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url='https://accounts.google.com/.well-known/openid-configuration',
        client_kwargs={'scope': 'openid email profile'},
    )
else:
    logging.info("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set; Google login disabled.")

# Initialize database (can be disabled when schema is managed by migrations).
RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")


def create_default_admin():
    """Ensure the bootstrap admin exists; never resets its password."""
    if not DEFAULT_ADMIN_PASSWORD:
        logging.warning("DEFAULT_ADMIN_PASSWORD is not set; skipping admin bootstrap.")
        return None
    return services.ensure_default_admin(DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD)


RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_BOOTSTRAP:
    create_default_admin()


def format_timestamp(ts, empty='Never'):
    if not ts:
        return empty
    try:
        return ts.strftime('%Y-%m-%d %H:%M')
    except AttributeError:
        return str(ts)


app.jinja_env.filters['timestamp'] = format_timestamp


def is_api_request():
    return request.path.startswith('/api/')


# ==================== REQUEST HOOKS ====================

@app.before_request
def load_web_user():
    """Resolve the page user from cookies, rotating an expired access token."""
    g.web_user = None
    if is_api_request() or request.endpoint in (None, 'static', 'health'):
        return None
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        try:
            g.web_user = services.authenticate(token)
            return None
        except AppError as exc:
            logging.debug("Access cookie rejected (%s); trying refresh.", exc.code)
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        return None
    try:
        g.web_user, g.issued_tokens = services.refresh_session(refresh_token, rotate=True)
    except AppError as exc:
        logging.info("Refresh cookie rejected: %s", exc.message)
        g.clear_auth_cookies = True
    return None


@app.after_request
def write_auth_cookies(response):
    tokens = g.pop('issued_tokens', None)
    if tokens:
        set_auth_cookies(response, tokens)
    elif g.pop('clear_auth_cookies', False):
        clear_auth_cookies(response)
    return response


@app.context_processor
def inject_user():
    return {'current_user': g.get('web_user')}


def web_user(*roles):
    """The logged-in page user when it has one of the roles (any role if none given)."""
    user = g.get('web_user')
    if not user or (roles and user['role'] not in roles):
        return None
    return user


# ==================== ERROR HANDLERS ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if g.get('web_user'):
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('dashboard'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))


@app.errorhandler(AppError)
def app_error(error):
    if is_api_request():
        return jsonify(error.to_dict()), error.status_code
    flash(error.message, 'error')
    return redirect(request.referrer or url_for('dashboard'))


@app.errorhandler(HTTPException)
def http_error(error):
    if is_api_request():
        body = {'error': error.name.replace(' ', ''), 'message': error.description, 'statusCode': error.code}
        return jsonify(body), error.code
    return error


@app.errorhandler(Exception)
def unexpected_error(error):
    logging.exception("Unhandled error on %s %s", request.method, request.path)
    if is_api_request():
        body = {'error': 'InternalServerError', 'message': 'An unexpected error occurred', 'statusCode': 500}
        return jsonify(body), 500
    return render_template('shared/error.html', message='An unexpected error occurred. Please try again.'), 500


# ==================== ROUTES ====================

@app.route('/health')
def health():
    return jsonify({'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat()})


@app.route('/')
def home():
    if web_user():
        return redirect(url_for('dashboard'))
    return redirect(url_for('login'))


@app.route('/dashboard')
def dashboard():
    user = web_user()
    if not user:
        return redirect(url_for('login'))
    if user['role'] == 'admin':
        return redirect(url_for('admin_dashboard'))
    if user['role'] == 'teacher':
        return redirect(url_for('teacher_dashboard'))
    return redirect(url_for('student_dashboard'))


@app.route('/login', methods=['GET', 'POST'])
def login():
    """Single login for all users; the role comes from the account."""
    if request.method == 'GET' and request.args.get('error'):
        flash(request.args['error'], 'error')
    if request.method == 'POST':
        try:
            data = validation.validate_login(request.form)
            user, tokens = services.login(
                data['email'],
                data['password'],
                ip_address=client_ip(),
                user_agent=request.headers.get('User-Agent'),
            )
        except AppError as exc:
            flash(exc.message, 'error')
            return render_template('shared/login.html', email=request.form.get('email', '')), exc.status_code
        g.issued_tokens = tokens
        flash(f"Welcome back, {user['name']}.", 'success')
        return redirect(url_for('dashboard'))
    if web_user():
        return redirect(url_for('dashboard'))
    return render_template('shared/login.html', google_enabled=oauth.create_client('google') is not None)


@app.route('/register', methods=['GET', 'POST'])
def register():
    if request.method == 'POST':
        try:
            data = validation.validate_register(request.form)
            services.register_user(data['email'], data['password'], data['name'], data['role'])
        except AppError as exc:
            flash(exc.message, 'error')
            return render_template('shared/register.html', form=request.form), exc.status_code
        flash('Account created. Please log in.', 'success')
        return redirect(url_for('login'))
    return render_template('shared/register.html', form={})


@app.route('/logout')
def logout():
    # The refresh cookie may already have been rotated by load_web_user.
    rotated = g.pop('issued_tokens', None)
    services.logout(rotated['refresh_token'] if rotated else request.cookies.get(REFRESH_COOKIE))
    g.clear_auth_cookies = True
    return redirect(url_for('login'))


@app.route('/forgot-password', methods=['GET', 'POST'])
def forgot_password():
    if request.method == 'POST':
        try:
            data = validation.validate_password_reset_request(request.form)
        except AppError as exc:
            flash(exc.message, 'error')
            return render_template('shared/forgot_password.html'), exc.status_code
        token = services.request_password_reset(data['email'])
        if token:
            reset_link = url_for('reset_password', token=token, _external=True)
            logging.info("Password reset link: %s", reset_link)
            if ALLOW_INSECURE_DEFAULTS:
                flash(f'Development reset link: {reset_link}', 'info')
        flash('If the account exists, a password reset link has been issued.', 'success')
        return redirect(url_for('login'))
    return render_template('shared/forgot_password.html')


@app.route('/reset-password', methods=['GET', 'POST'])
def reset_password():
    token = request.values.get('token', '')
    if request.method == 'POST':
        try:
            data = validation.validate_password_reset(request.form)
            services.reset_password(data['token'], data['new_password'])
        except AppError as exc:
            flash(exc.message, 'error')
            return render_template('shared/reset_password.html', token=token), exc.status_code
        flash('Password has been reset. Please log in.', 'success')
        return redirect(url_for('login'))
    return render_template('shared/reset_password.html', token=token)


@app.route('/account', methods=['GET', 'POST'])
def account():
    user = web_user()
    if not user:
        return redirect(url_for('login'))
    if request.method == 'POST':
        try:
            data = validation.validate_change_password(request.form)
            services.change_password(user['id'], data['current_password'], data['new_password'])
        except AppError as exc:
            flash(exc.message, 'error')
            return redirect(url_for('account'))
        g.issued_tokens = None
        g.clear_auth_cookies = True
        flash('Password changed. Please log in again.', 'success')
        return redirect(url_for('login'))
    return render_template(
        'shared/account.html',
        user=user,
        oauth_accounts=services.list_oauth_accounts(user['id']),
        session_count=services.get_session_count(user['id']),
        google_enabled=oauth.create_client('google') is not None,
    )


@app.route('/account/unlink/<provider>', methods=['POST'])
def account_unlink(provider):
    user = web_user()
    if not user:
        return redirect(url_for('login'))
    try:
        services.unlink_oauth_account(user['id'], provider)
        flash(f'{provider.title()} account unlinked.', 'success')
    except AppError as exc:
        flash(exc.message, 'error')
    return redirect(url_for('account'))


# ==================== ADMIN ROUTES ====================

@app.route('/admin')
def admin_dashboard():
    user = web_user('admin')
    if not user:
        return redirect(url_for('login'))
    try:
        query = validation.validate_user_query(request.args)
    except AppError as exc:
        flash(exc.message, 'error')
        query = validation.validate_user_query({})
    users, pagination = services.search_users(**query)
    return render_template(
        'admin/dashboard.html',
        users=users,
        pagination=pagination,
        filters=query,
        last_login_at=format_timestamp(user.get('last_login_at'), 'First login'),
    )


@app.route('/admin/users/create', methods=['POST'])
def admin_create_user():
    if not web_user('admin'):
        return redirect(url_for('login'))
    try:
        data = validation.validate_create_user(request.form)
        created = services.create_user(**data)
        flash(f"User created: {created['email']} ({created['role']})", 'success')
    except AppError as exc:
        flash(f'Error creating user: {exc.message}', 'error')
    return redirect(url_for('admin_dashboard'))


@app.route('/admin/users/<user_id>/edit', methods=['GET', 'POST'])
def admin_edit_user(user_id):
    if not web_user('admin'):
        return redirect(url_for('login'))
    try:
        user_id = validation.clean_uuid(user_id, 'user id')
        target = services.get_user(user_id)
    except AppError as exc:
        flash(exc.message, 'error')
        return redirect(url_for('admin_dashboard'))
    if request.method == 'POST':
        try:
            services.update_user(user_id, validation.validate_update_user(request.form))
            flash('User updated.', 'success')
            return redirect(url_for('admin_dashboard'))
        except AppError as exc:
            flash(f'Error updating user: {exc.message}', 'error')
    return render_template('admin/edit_user.html', target=target)


@app.route('/admin/users/<user_id>/<action>', methods=['POST'])
def admin_user_action(user_id, action):
    user = web_user('admin')
    if not user:
        return redirect(url_for('login'))
    try:
        user_id = validation.clean_uuid(user_id, 'user id')
        if action == 'suspend':
            services.suspend_user(user_id, acting_user_id=user['id'])
            flash('User suspended.', 'success')
        elif action == 'unsuspend':
            services.unsuspend_user(user_id)
            flash('User unsuspended.', 'success')
        elif action == 'delete':
            services.delete_user(user_id, acting_user_id=user['id'])
            flash('User deleted.', 'success')
        else:
            flash('Unknown action.', 'error')
    except AppError as exc:
        flash(exc.message, 'error')
    return redirect(request.referrer or url_for('admin_dashboard'))


# ==================== TEACHER ROUTES ====================

@app.route('/teacher')
def teacher_dashboard():
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        page, limit = validation.parse_pagination(request.args)
    except AppError:
        page, limit = 1, validation.DEFAULT_PAGE_SIZE
    classes, pagination = services.list_teacher_classes(user['id'], page=page, limit=limit)
    return render_template(
        'teacher/dashboard.html',
        classes=classes,
        pagination=pagination,
        last_login_at=format_timestamp(user.get('last_login_at'), 'First login'),
    )


@app.route('/teacher/classes/create', methods=['POST'])
def teacher_create_class():
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        data = validation.validate_class(request.form)
        klass = services.create_class(user['id'], data['name'], data.get('description'))
        flash(f"Class created: {klass['name']}", 'success')
        return redirect(url_for('teacher_class', class_id=klass['id']))
    except AppError as exc:
        flash(f'Error creating class: {exc.message}', 'error')
    return redirect(url_for('teacher_dashboard'))


@app.route('/teacher/classes/<class_id>')
def teacher_class(class_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    class_id = validation.clean_uuid(class_id, 'class id')
    klass = services.get_owned_class(class_id, user['id'])
    other_classes, _pagination = services.list_teacher_classes(user['id'], page=1, limit=validation.MAX_PAGE_SIZE)
    return render_template(
        'teacher/class_detail.html',
        klass=klass,
        students=services.list_class_students(class_id, user['id']),
        assignments=services.list_class_assignments(class_id, user['id']),
        other_classes=[c for c in other_classes if c['id'] != class_id],
    )


@app.route('/teacher/classes/<class_id>/edit', methods=['POST'])
def teacher_edit_class(class_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        services.update_class(
            validation.clean_uuid(class_id, 'class id'),
            user['id'],
            validation.validate_class(request.form, partial=True),
        )
        flash('Class updated.', 'success')
    except AppError as exc:
        flash(f'Error updating class: {exc.message}', 'error')
    return redirect(url_for('teacher_class', class_id=class_id))


@app.route('/teacher/classes/<class_id>/delete', methods=['POST'])
def teacher_delete_class(class_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        services.delete_class(validation.clean_uuid(class_id, 'class id'), user['id'])
        flash('Class deleted.', 'success')
    except AppError as exc:
        flash(f'Error deleting class: {exc.message}', 'error')
        return redirect(url_for('teacher_class', class_id=class_id))
    return redirect(url_for('teacher_dashboard'))


@app.route('/teacher/classes/<class_id>/students/add', methods=['POST'])
def teacher_add_student(class_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        email = validation.clean_email(request.form.get('email'))
        services.enroll_student_by_email(validation.clean_uuid(class_id, 'class id'), user['id'], email)
        flash(f'{email} enrolled.', 'success')
    except AppError as exc:
        flash(f'Error enrolling student: {exc.message}', 'error')
    return redirect(url_for('teacher_class', class_id=class_id))


@app.route('/teacher/classes/<class_id>/students/<student_id>/remove', methods=['POST'])
def teacher_remove_student(class_id, student_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        services.remove_student(
            validation.clean_uuid(class_id, 'class id'),
            user['id'],
            validation.clean_uuid(student_id, 'student id'),
        )
        flash('Student removed from class.', 'success')
    except AppError as exc:
        flash(f'Error removing student: {exc.message}', 'error')
    return redirect(url_for('teacher_class', class_id=class_id))


@app.route('/teacher/classes/<class_id>/transfer', methods=['POST'])
def teacher_transfer_students(class_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        data = validation.validate_transfer({
            'toClassId': request.form.get('to_class_id'),
            'studentIds': request.form.getlist('student_ids'),
        })
        moved = services.transfer_students(
            validation.clean_uuid(class_id, 'class id'), data['to_class_id'], user['id'], data['student_ids']
        )
        flash(f'{moved} student(s) transferred.', 'success')
    except AppError as exc:
        flash(f'Error transferring students: {exc.message}', 'error')
    return redirect(url_for('teacher_class', class_id=class_id))


@app.route('/teacher/classes/<class_id>/assignments/create', methods=['POST'])
def teacher_create_assignment(class_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        form = request.form.to_dict()
        form['classId'] = class_id
        data = validation.validate_assignment(form)
        services.create_assignment(user['id'], data['class_id'], data['title'], data['description'], data['due_date'])
        flash(f"Assignment created: {data['title']}", 'success')
    except AppError as exc:
        flash(f'Error creating assignment: {exc.message}', 'error')
    return redirect(url_for('teacher_class', class_id=class_id))


@app.route('/teacher/assignments/<assignment_id>')
def teacher_assignment(assignment_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    assignment_id = validation.clean_uuid(assignment_id, 'assignment id')
    assignment = services.get_owned_assignment(assignment_id, user['id'])
    return render_template(
        'teacher/assignment_detail.html',
        assignment=assignment,
        submissions=services.list_assignment_submissions(assignment_id, user['id']),
        stats=services.submission_stats(assignment_id, user['id']),
    )


@app.route('/teacher/assignments/<assignment_id>/edit', methods=['POST'])
def teacher_edit_assignment(assignment_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        updates = validation.validate_assignment(request.form, partial=True)
        services.update_assignment(validation.clean_uuid(assignment_id, 'assignment id'), user['id'], updates)
        flash('Assignment updated.', 'success')
    except AppError as exc:
        flash(f'Error updating assignment: {exc.message}', 'error')
    return redirect(url_for('teacher_assignment', assignment_id=assignment_id))


@app.route('/teacher/assignments/<assignment_id>/delete', methods=['POST'])
def teacher_delete_assignment(assignment_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        assignment_id = validation.clean_uuid(assignment_id, 'assignment id')
        assignment = services.get_owned_assignment(assignment_id, user['id'])
        services.delete_assignment(assignment_id, user['id'])
        flash('Assignment deleted.', 'success')
    except AppError as exc:
        flash(f'Error deleting assignment: {exc.message}', 'error')
        return redirect(url_for('teacher_assignment', assignment_id=assignment_id))
    return redirect(url_for('teacher_class', class_id=assignment['class_id']))


@app.route('/teacher/submissions/<submission_id>/grade', methods=['POST'])
def teacher_grade_submission(submission_id):
    user = web_user('teacher')
    if not user:
        return redirect(url_for('login'))
    try:
        data = validation.validate_grade(request.form)
        services.grade_submission(
            validation.clean_uuid(submission_id, 'submission id'), user['id'], data['grade'], data['feedback']
        )
        flash('Grade saved.', 'success')
    except AppError as exc:
        flash(f'Error saving grade: {exc.message}', 'error')
    return redirect(request.referrer or url_for('teacher_dashboard'))


# ==================== STUDENT ROUTES ====================

@app.route('/student')
def student_dashboard():
    user = web_user('student')
    if not user:
        return redirect(url_for('login'))
    now = datetime.now(timezone.utc)
    assignments = services.list_student_assignments(user['id'])
    upcoming = sorted(
        (a for a in assignments if a['due_date'] > now and not a.get('submission_id')),
        key=lambda a: a['due_date'],
    )
    return render_template(
        'student/dashboard.html',
        classes=services.list_student_classes(user['id']),
        upcoming=upcoming,
        overdue=services.list_overdue_assignments(user['id']),
        last_login_at=format_timestamp(user.get('last_login_at'), 'First login'),
    )


@app.route('/student/assignments')
def student_assignments():
    user = web_user('student')
    if not user:
        return redirect(url_for('login'))
    return render_template(
        'student/assignments.html',
        assignments=services.list_student_assignments(user['id']),
        now=datetime.now(timezone.utc),
    )


@app.route('/student/assignments/<assignment_id>')
def student_assignment(assignment_id):
    user = web_user('student')
    if not user:
        return redirect(url_for('login'))
    assignment, submission, grade = services.get_student_assignment(
        validation.clean_uuid(assignment_id, 'assignment id'), user['id']
    )
    now = datetime.now(timezone.utc)
    return render_template(
        'student/assignment_detail.html',
        assignment=assignment,
        submission=submission,
        grade=grade,
        can_submit=submission is None and assignment['due_date'] > now,
        can_edit=submission is not None and grade is None,
    )


@app.route('/student/assignments/<assignment_id>/submit', methods=['POST'])
def student_submit(assignment_id):
    user = web_user('student')
    if not user:
        return redirect(url_for('login'))
    try:
        form = request.form.to_dict()
        submission_id = form.pop('submission_id', '')
        if submission_id:
            updates = validation.validate_submission(form, partial=True)
            services.update_submission(validation.clean_uuid(submission_id, 'submission id'), user['id'], updates)
            flash('Submission updated.', 'success')
        else:
            form['assignmentId'] = assignment_id
            data = validation.validate_submission(form)
            services.submit_assignment(data['assignment_id'], user['id'], data['content'], data.get('file_url'))
            flash('Assignment submitted.', 'success')
    except AppError as exc:
        flash(f'Error submitting assignment: {exc.message}', 'error')
    return redirect(url_for('student_assignment', assignment_id=assignment_id))


@app.route('/student/grades')
def student_grades():
    user = web_user('student')
    if not user:
        return redirect(url_for('login'))
    return render_template('student/grades.html', grades=services.student_grades(user['id']))


# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
