"""Request payload parsing for the API and the web forms.

Every validator takes a mapping (JSON body, query args or form data) and
returns cleaned values, raising ValidationError with a readable message.
"""

import re
import uuid
from datetime import datetime, timezone
from urllib.parse import urlparse

from .errors import ValidationError
from .security import ROLES, password_problems

EMAIL_MAX_LENGTH = 255
NAME_MAX_LENGTH = 255
URL_MAX_LENGTH = 500
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
MAX_BATCH_IDS = 100
MAX_BULK_GRADES = 50


def is_valid_email(value):
    """Simple email validation."""
    email = (value or '').strip()
    return bool(re.fullmatch(r'^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$', email))


def normalize_email(value):
    return (value or '').strip().lower()


def is_valid_uuid(value):
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return False
    return True


def is_valid_url(value):
    parsed = urlparse(value or '')
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def _text(data, key):
    value = data.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be a string')
    return value.strip()


def clean_email(value):
    email = normalize_email(value)
    if not email:
        raise ValidationError('Email is required')
    if len(email) > EMAIL_MAX_LENGTH:
        raise ValidationError(f'Email must be at most {EMAIL_MAX_LENGTH} characters')
    if not is_valid_email(email):
        raise ValidationError('Invalid email format')
    return email


def clean_name(value, label='Name'):
    name = ' '.join((value or '').split())
    if not name:
        raise ValidationError(f'{label} is required')
    if len(name) > NAME_MAX_LENGTH:
        raise ValidationError(f'{label} must be at most {NAME_MAX_LENGTH} characters')
    return name


def clean_password(value, label='Password'):
    password = value or ''
    if not password:
        raise ValidationError(f'{label} is required')
    problems = password_problems(password)
    if problems:
        raise ValidationError('; '.join(problems))
    return password


def clean_role(value):
    role = (value or '').strip().lower()
    if role not in ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(ROLES)}")
    return role


def clean_uuid(value, label='id'):
    if not is_valid_uuid(value):
        raise ValidationError(f'Invalid {label} format')
    return str(uuid.UUID(str(value)))


def clean_uuid_list(values, label='ids', max_items=MAX_BATCH_IDS):
    if not isinstance(values, (list, tuple)) or not values:
        raise ValidationError(f'At least one entry is required in {label}')
    if len(values) > max_items:
        raise ValidationError(f'Cannot process more than {max_items} entries at once')
    cleaned = []
    for value in values:
        item = clean_uuid(value, label)
        if item not in cleaned:
            cleaned.append(item)
    return cleaned


def parse_bool(value, label='value'):
    if isinstance(value, bool):
        return value
    text = str(value or '').strip().lower()
    if text in ('true', '1', 'yes', 'on'):
        return True
    if text in ('false', '0', 'no', 'off'):
        return False
    raise ValidationError(f'{label} must be true or false')


def parse_positive_int(value, label, default, maximum=None):
    if value in (None, ''):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{label} must be a positive integer') from exc
    if number < 1:
        raise ValidationError(f'{label} must be a positive integer')
    if maximum is not None and number > maximum:
        raise ValidationError(f'{label} must be at most {maximum}')
    return number


def parse_pagination(args):
    page = parse_positive_int(args.get('page'), 'page', 1)
    limit = parse_positive_int(args.get('limit'), 'limit', DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE)
    return page, limit


def parse_due_date(value):
    """ISO-8601 timestamp; a trailing Z is accepted and naive values are UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = (value or '').strip() if isinstance(value, str) else ''
        if not text:
            raise ValidationError('Due date is required')
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError('Invalid date format. Use ISO 8601 format') from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_grade(value):
    if isinstance(value, bool) or value in (None, ''):
        raise ValidationError('Grade is required')
    try:
        grade = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError('Grade must be a number') from exc
    if grade != grade or grade < 0 or grade > 100:
        raise ValidationError('Grade must be between 0 and 100')
    return round(grade, 2)


def clean_file_url(value):
    url = (value or '').strip()
    if not url:
        return None
    if len(url) > URL_MAX_LENGTH:
        raise ValidationError(f'File URL must be at most {URL_MAX_LENGTH} characters')
    if not is_valid_url(url):
        raise ValidationError('Invalid URL format')
    return url


# ---- auth ----

def validate_register(data):
    role = _text(data, 'role') or 'student'
    return {
        'email': clean_email(_text(data, 'email')),
        'password': clean_password(data.get('password')),
        'name': clean_name(_text(data, 'name')),
        'role': clean_role(role),
    }


def validate_login(data):
    email = normalize_email(_text(data, 'email'))
    password = data.get('password') or ''
    if not email or not password:
        raise ValidationError('Email and password are required')
    return {'email': email, 'password': password}


def validate_change_password(data):
    current = data.get('currentPassword') or data.get('current_password') or ''
    if not current:
        raise ValidationError('Current password is required')
    new_password = clean_password(data.get('newPassword') or data.get('new_password'), 'New password')
    return {'current_password': current, 'new_password': new_password}


def validate_password_reset_request(data):
    return {'email': clean_email(_text(data, 'email'))}


def validate_password_reset(data):
    token = _text(data, 'token')
    if not token:
        raise ValidationError('Reset token is required')
    password = clean_password(data.get('newPassword') or data.get('new_password') or data.get('password'), 'New password')
    return {'token': token, 'new_password': password}


# ---- users ----

def validate_create_user(data):
    password = data.get('password')
    return {
        'email': clean_email(_text(data, 'email')),
        'password': clean_password(password) if password else None,
        'name': clean_name(_text(data, 'name')),
        'role': clean_role(_text(data, 'role')),
        'suspended': parse_bool(data.get('suspended', False), 'suspended'),
    }


def validate_update_user(data):
    updates = {}
    if data.get('email') not in (None, ''):
        updates['email'] = clean_email(_text(data, 'email'))
    if data.get('name') not in (None, ''):
        updates['name'] = clean_name(_text(data, 'name'))
    if data.get('role') not in (None, ''):
        updates['role'] = clean_role(_text(data, 'role'))
    if data.get('password') not in (None, ''):
        updates['password'] = clean_password(data.get('password'))
    if not updates:
        raise ValidationError('At least one field must be provided for update')
    return updates


def validate_user_query(args):
    page, limit = parse_pagination(args)
    role = (args.get('role') or '').strip()
    suspended = args.get('suspended')
    return {
        'role': clean_role(role) if role else None,
        'suspended': parse_bool(suspended, 'suspended') if suspended not in (None, '') else None,
        'search': (args.get('search') or '').strip() or None,
        'page': page,
        'limit': limit,
    }


def validate_user_ids(data):
    return clean_uuid_list(data.get('userIds'), 'userIds')


# ---- classes ----

def validate_class(data, partial=False):
    cleaned = {}
    if not partial or data.get('name') not in (None, ''):
        cleaned['name'] = clean_name(_text(data, 'name'), 'Class name')
    if 'description' in data:
        cleaned['description'] = _text(data, 'description') or None
    if partial and not cleaned:
        raise ValidationError('At least one field must be provided for update')
    return cleaned


def validate_student_ids(data):
    """Either a single studentId or a studentIds list; returns a list."""
    if data.get('studentIds') is not None:
        return clean_uuid_list(data.get('studentIds'), 'studentIds')
    if data.get('studentId'):
        return [clean_uuid(data.get('studentId'), 'studentId')]
    raise ValidationError('studentId or studentIds is required')


def validate_transfer(data):
    return {
        'to_class_id': clean_uuid(data.get('toClassId'), 'toClassId'),
        'student_ids': clean_uuid_list(data.get('studentIds'), 'studentIds'),
    }


# ---- assignments and submissions ----

def validate_assignment(data, partial=False):
    cleaned = {}
    if not partial:
        cleaned['class_id'] = clean_uuid(data.get('classId'), 'classId')
    if not partial or data.get('title') not in (None, ''):
        cleaned['title'] = clean_name(_text(data, 'title'), 'Title')
    if not partial or data.get('description') not in (None, ''):
        description = _text(data, 'description')
        if not description:
            raise ValidationError('Description is required')
        cleaned['description'] = description
    if not partial or data.get('dueDate') not in (None, ''):
        cleaned['due_date'] = parse_due_date(data.get('dueDate'))
    if partial and not cleaned:
        raise ValidationError('At least one field must be provided for update')
    return cleaned


def validate_submission(data, partial=False):
    cleaned = {}
    if not partial:
        cleaned['assignment_id'] = clean_uuid(data.get('assignmentId'), 'assignmentId')
    if not partial or data.get('content') not in (None, ''):
        content = _text(data, 'content')
        if not content:
            raise ValidationError('Content is required')
        cleaned['content'] = content
    if 'fileUrl' in data:
        cleaned['file_url'] = clean_file_url(data.get('fileUrl'))
    if partial and not cleaned:
        raise ValidationError('At least one field must be provided for update')
    return cleaned


def validate_grade(data):
    feedback = data.get('feedback')
    if feedback is not None and not isinstance(feedback, str):
        raise ValidationError('feedback must be a string')
    return {
        'grade': parse_grade(data.get('grade')),
        'feedback': (feedback or '').strip() or None,
    }


def validate_bulk_grades(data):
    entries = data.get('grades')
    if not isinstance(entries, list) or not entries:
        raise ValidationError('At least one grade is required')
    if len(entries) > MAX_BULK_GRADES:
        raise ValidationError(f'Cannot grade more than {MAX_BULK_GRADES} submissions at once')
    cleaned = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError('Each grade must be an object')
        item = validate_grade(entry)
        item['submission_id'] = clean_uuid(entry.get('submissionId'), 'submissionId')
        cleaned.append(item)
    return cleaned
