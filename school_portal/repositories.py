"""SQL access for users, classes, coursework, sessions and login throttling.

One function per query. Each opens its own connection unless it has a
`_with_cursor` suffix, in which case it runs inside the caller's transaction.
Rows are returned as plain dicts.
"""

import math
from datetime import datetime, timedelta, timezone

from .db import db_connection, db_execute, row_to_dict, rows_to_dicts

LOGIN_MAX_ATTEMPTS = 4
LOGIN_LOCK_MINUTES = 15

USER_COLUMNS = '''id, email, password_hash, role, name, suspended,
                  current_login_at, last_login_at, created_at, updated_at'''
USER_UPDATABLE_COLUMNS = ('email', 'password_hash', 'role', 'name', 'suspended')
CLASS_UPDATABLE_COLUMNS = ('name', 'description')
ASSIGNMENT_UPDATABLE_COLUMNS = ('title', 'description', 'due_date')
SUBMISSION_UPDATABLE_COLUMNS = ('content', 'file_url')


def _utcnow():
    return datetime.now(timezone.utc)


def _set_clause(updates, allowed):
    """Build `col = ?, ...` for whitelisted columns plus updated_at."""
    columns = [key for key in updates if key in allowed]
    assignments = [f'{column} = ?' for column in columns]
    assignments.append('updated_at = CURRENT_TIMESTAMP')
    return ', '.join(assignments), [updates[column] for column in columns]


def _fetch_one(query, params=None, commit=False):
    with db_connection(commit=commit) as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return row_to_dict(c.fetchone())


def _fetch_all(query, params=None):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return rows_to_dicts(c.fetchall())


def _fetch_count(query, params=None):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        row = c.fetchone()
    return int(row[0] or 0) if row else 0


def _execute(query, params=None):
    """Run a write and return the affected row count."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        return int(c.rowcount or 0)


# ==================== USERS ====================

def find_user_by_id(user_id):
    return _fetch_one(f'SELECT {USER_COLUMNS} FROM users WHERE id = ?', (user_id,))


def find_user_by_email(email):
    return _fetch_one(
        f'SELECT {USER_COLUMNS} FROM users WHERE LOWER(email) = LOWER(?) LIMIT 1',
        ((email or '').strip(),),
    )


def create_user(email, password_hash, name, role, suspended=False):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return create_user_with_cursor(c, email, password_hash, name, role, suspended)


def create_user_with_cursor(c, email, password_hash, name, role, suspended=False):
    db_execute(
        c,
        f'''INSERT INTO users (email, password_hash, name, role, suspended)
            VALUES (?, ?, ?, ?, ?)
            RETURNING {USER_COLUMNS}''',
        (email, password_hash, name, role, bool(suspended)),
    )
    return row_to_dict(c.fetchone())


def update_user(user_id, updates):
    set_sql, params = _set_clause(updates, USER_UPDATABLE_COLUMNS)
    return _fetch_one(
        f'UPDATE users SET {set_sql} WHERE id = ? RETURNING {USER_COLUMNS}',
        params + [user_id],
        commit=True,
    )


def delete_user(user_id):
    return _execute('DELETE FROM users WHERE id = ?', (user_id,)) > 0


def set_user_suspended(user_id, suspended):
    return _fetch_one(
        f'''UPDATE users SET suspended = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? RETURNING {USER_COLUMNS}''',
        (bool(suspended), user_id),
        commit=True,
    )


def batch_suspend_users(user_ids):
    return _execute(
        '''UPDATE users SET suspended = TRUE, updated_at = CURRENT_TIMESTAMP
           WHERE id = ANY(?::uuid[]) AND suspended = FALSE''',
        (list(user_ids),),
    )


def find_users_by_ids(user_ids):
    return _fetch_all(
        f'SELECT {USER_COLUMNS} FROM users WHERE id = ANY(?::uuid[])',
        (list(user_ids),),
    )


def count_users(role=None, suspended=None):
    where, params = _user_filters(role=role, suspended=suspended)
    return _fetch_count(f'SELECT COUNT(*) FROM users {where}', params)


def _user_filters(role=None, suspended=None, search=None):
    clauses = []
    params = []
    if role:
        clauses.append('role = ?')
        params.append(role)
    if suspended is not None:
        clauses.append('suspended = ?')
        params.append(bool(suspended))
    if search:
        clauses.append('(email ILIKE ? OR name ILIKE ?)')
        pattern = f'%{search}%'
        params.extend([pattern, pattern])
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    return where, params


def list_users(role=None, suspended=None, search=None, limit=20, offset=0):
    """Return (rows, total) for the filtered, paged user list."""
    where, params = _user_filters(role=role, suspended=suspended, search=search)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM users {where}', params)
        total = int(c.fetchone()[0] or 0)
        db_execute(
            c,
            f'''SELECT {USER_COLUMNS} FROM users {where}
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?''',
            params + [limit, offset],
        )
        rows = rows_to_dicts(c.fetchall())
    return rows, total


def list_users_by_role(role):
    return _fetch_all(
        f'SELECT {USER_COLUMNS} FROM users WHERE role = ? ORDER BY name ASC',
        (role,),
    )


def search_students_by_email(fragment, limit=10):
    return _fetch_all(
        f'''SELECT {USER_COLUMNS} FROM users
            WHERE role = 'student' AND suspended = FALSE AND email ILIKE ?
            ORDER BY email ASC
            LIMIT ?''',
        (f'%{fragment}%', limit),
    )


def user_owns_records(user_id):
    """True when the user still teaches a class or has graded work."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT EXISTS (SELECT 1 FROM classes WHERE teacher_id = ?)
                   OR EXISTS (SELECT 1 FROM grades WHERE teacher_id = ?)''',
            (user_id, user_id),
        )
        row = c.fetchone()
    return bool(row and row[0])


def update_login_timestamps(user_id):
    """Shift current_login_at -> last_login_at and set current_login_at=now."""
    _execute(
        '''UPDATE users
           SET last_login_at = current_login_at,
               current_login_at = CURRENT_TIMESTAMP
           WHERE id = ?''',
        (user_id,),
    )


# ==================== CLASSES ====================

CLASS_COLUMNS = 'c.id, c.name, c.teacher_id, c.description, c.created_at, c.updated_at'


def create_class(name, teacher_id, description=None):
    return _fetch_one(
        '''INSERT INTO classes (name, teacher_id, description)
           VALUES (?, ?, ?)
           RETURNING id, name, teacher_id, description, created_at, updated_at''',
        (name, teacher_id, description),
        commit=True,
    )


def find_class_by_id(class_id):
    return _fetch_one(
        f'''SELECT {CLASS_COLUMNS}, u.name AS teacher_name
            FROM classes c
            JOIN users u ON u.id = c.teacher_id
            WHERE c.id = ?''',
        (class_id,),
    )


def update_class(class_id, updates):
    set_sql, params = _set_clause(updates, CLASS_UPDATABLE_COLUMNS)
    return _fetch_one(
        f'''UPDATE classes SET {set_sql} WHERE id = ?
            RETURNING id, name, teacher_id, description, created_at, updated_at''',
        params + [class_id],
        commit=True,
    )


def delete_class(class_id):
    return _execute('DELETE FROM classes WHERE id = ?', (class_id,)) > 0


def list_classes_by_teacher(teacher_id, limit=20, offset=0):
    """Return (rows, total); each row carries its student count."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) FROM classes WHERE teacher_id = ?', (teacher_id,))
        total = int(c.fetchone()[0] or 0)
        db_execute(
            c,
            f'''SELECT {CLASS_COLUMNS},
                       (SELECT COUNT(*) FROM class_students cs WHERE cs.class_id = c.id) AS student_count
                FROM classes c
                WHERE c.teacher_id = ?
                ORDER BY c.created_at DESC
                LIMIT ? OFFSET ?''',
            (teacher_id, limit, offset),
        )
        rows = rows_to_dicts(c.fetchall())
    return rows, total


def list_classes_for_student(student_id):
    return _fetch_all(
        f'''SELECT {CLASS_COLUMNS}, u.name AS teacher_name, cs.enrolled_at
            FROM classes c
            JOIN class_students cs ON cs.class_id = c.id
            JOIN users u ON u.id = c.teacher_id
            WHERE cs.student_id = ?
            ORDER BY c.name ASC''',
        (student_id,),
    )


def list_all_classes():
    return _fetch_all(
        f'''SELECT {CLASS_COLUMNS}, u.name AS teacher_name,
                   (SELECT COUNT(*) FROM class_students cs WHERE cs.class_id = c.id) AS student_count
            FROM classes c
            JOIN users u ON u.id = c.teacher_id
            ORDER BY c.name ASC'''
    )


def is_student_enrolled(class_id, student_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT 1 FROM class_students WHERE class_id = ? AND student_id = ? LIMIT 1',
            (class_id, student_id),
        )
        return c.fetchone() is not None


def add_student_to_class(class_id, student_id):
    return _execute(
        '''INSERT INTO class_students (class_id, student_id)
           VALUES (?, ?)
           ON CONFLICT (class_id, student_id) DO NOTHING''',
        (class_id, student_id),
    ) > 0


def add_students_to_class_with_cursor(c, class_id, student_ids):
    added = 0
    for student_id in student_ids:
        db_execute(
            c,
            '''INSERT INTO class_students (class_id, student_id)
               VALUES (?, ?)
               ON CONFLICT (class_id, student_id) DO NOTHING''',
            (class_id, student_id),
        )
        added += int(c.rowcount or 0)
    return added


def add_students_to_class(class_id, student_ids):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return add_students_to_class_with_cursor(c, class_id, student_ids)


def remove_student_from_class(class_id, student_id):
    return _execute(
        'DELETE FROM class_students WHERE class_id = ? AND student_id = ?',
        (class_id, student_id),
    ) > 0


def list_enrolled_student_ids(class_id):
    rows = _fetch_all('SELECT student_id FROM class_students WHERE class_id = ?', (class_id,))
    return [row['student_id'] for row in rows]


def list_class_students(class_id):
    return _fetch_all(
        '''SELECT u.id, u.email, u.name, u.suspended, cs.enrolled_at
           FROM class_students cs
           JOIN users u ON u.id = cs.student_id
           WHERE cs.class_id = ?
           ORDER BY u.name ASC''',
        (class_id,),
    )


def transfer_students(from_class_id, to_class_id, student_ids):
    """Move enrolled students in one transaction; returns how many moved."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM class_students
               WHERE class_id = ? AND student_id = ANY(?::uuid[])
               RETURNING student_id''',
            (from_class_id, list(student_ids)),
        )
        moved = [row[0] for row in c.fetchall()]
        add_students_to_class_with_cursor(c, to_class_id, moved)
    return len(moved)


# ==================== ASSIGNMENTS ====================

ASSIGNMENT_COLUMNS = 'a.id, a.class_id, a.title, a.description, a.due_date, a.created_at, a.updated_at'


def create_assignment(class_id, title, description, due_date):
    return _fetch_one(
        '''INSERT INTO assignments (class_id, title, description, due_date)
           VALUES (?, ?, ?, ?)
           RETURNING id, class_id, title, description, due_date, created_at, updated_at''',
        (class_id, title, description, due_date),
        commit=True,
    )


def find_assignment_by_id(assignment_id):
    return _fetch_one(
        f'''SELECT {ASSIGNMENT_COLUMNS}, c.name AS class_name, c.teacher_id
            FROM assignments a
            JOIN classes c ON c.id = a.class_id
            WHERE a.id = ?''',
        (assignment_id,),
    )


def update_assignment(assignment_id, updates):
    set_sql, params = _set_clause(updates, ASSIGNMENT_UPDATABLE_COLUMNS)
    return _fetch_one(
        f'''UPDATE assignments SET {set_sql} WHERE id = ?
            RETURNING id, class_id, title, description, due_date, created_at, updated_at''',
        params + [assignment_id],
        commit=True,
    )


def delete_assignment(assignment_id):
    return _execute('DELETE FROM assignments WHERE id = ?', (assignment_id,)) > 0


def list_assignments_by_class(class_id):
    return _fetch_all(
        f'''SELECT {ASSIGNMENT_COLUMNS}
            FROM assignments a
            WHERE a.class_id = ?
            ORDER BY a.due_date ASC''',
        (class_id,),
    )


def list_assignments_by_teacher(teacher_id, class_id=None, limit=20, offset=0):
    """Return (rows, total) for the teacher's assignments, newest first."""
    where = 'WHERE c.teacher_id = ?'
    params = [teacher_id]
    if class_id:
        where += ' AND a.class_id = ?'
        params.append(class_id)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'SELECT COUNT(*) FROM assignments a JOIN classes c ON c.id = a.class_id {where}',
            params,
        )
        total = int(c.fetchone()[0] or 0)
        db_execute(
            c,
            f'''SELECT {ASSIGNMENT_COLUMNS}, c.name AS class_name
                FROM assignments a
                JOIN classes c ON c.id = a.class_id
                {where}
                ORDER BY a.created_at DESC
                LIMIT ? OFFSET ?''',
            params + [limit, offset],
        )
        rows = rows_to_dicts(c.fetchall())
    return rows, total


def list_assignments_for_student(student_id):
    return _fetch_all(
        f'''SELECT {ASSIGNMENT_COLUMNS}, c.name AS class_name,
                   s.id AS submission_id, s.submitted_at
            FROM assignments a
            JOIN classes c ON c.id = a.class_id
            JOIN class_students cs ON cs.class_id = a.class_id
            LEFT JOIN submissions s ON s.assignment_id = a.id AND s.student_id = cs.student_id
            WHERE cs.student_id = ?
            ORDER BY a.due_date DESC''',
        (student_id,),
    )


def list_upcoming_assignments(class_id, now=None):
    return _fetch_all(
        f'''SELECT {ASSIGNMENT_COLUMNS}
            FROM assignments a
            WHERE a.class_id = ? AND a.due_date > ?
            ORDER BY a.due_date ASC''',
        (class_id, now or _utcnow()),
    )


def list_overdue_assignments(student_id, now=None):
    return _fetch_all(
        f'''SELECT {ASSIGNMENT_COLUMNS}, c.name AS class_name
            FROM assignments a
            JOIN classes c ON c.id = a.class_id
            JOIN class_students cs ON cs.class_id = a.class_id
            WHERE cs.student_id = ?
              AND a.due_date < ?
              AND NOT EXISTS (
                  SELECT 1 FROM submissions s
                  WHERE s.assignment_id = a.id AND s.student_id = cs.student_id
              )
            ORDER BY a.due_date ASC''',
        (student_id, now or _utcnow()),
    )


# ==================== SUBMISSIONS ====================

SUBMISSION_COLUMNS = 's.id, s.assignment_id, s.student_id, s.content, s.file_url, s.submitted_at, s.updated_at'


def create_submission(assignment_id, student_id, content, file_url=None):
    return _fetch_one(
        '''INSERT INTO submissions (assignment_id, student_id, content, file_url)
           VALUES (?, ?, ?, ?)
           RETURNING id, assignment_id, student_id, content, file_url, submitted_at, updated_at''',
        (assignment_id, student_id, content, file_url),
        commit=True,
    )


def find_submission_by_id(submission_id):
    return _fetch_one(
        f'''SELECT {SUBMISSION_COLUMNS}, a.class_id, a.due_date, c.teacher_id
            FROM submissions s
            JOIN assignments a ON a.id = s.assignment_id
            JOIN classes c ON c.id = a.class_id
            WHERE s.id = ?''',
        (submission_id,),
    )


def find_submission(assignment_id, student_id):
    return _fetch_one(
        f'''SELECT {SUBMISSION_COLUMNS}
            FROM submissions s
            WHERE s.assignment_id = ? AND s.student_id = ?''',
        (assignment_id, student_id),
    )


def update_submission(submission_id, updates):
    set_sql, params = _set_clause(updates, SUBMISSION_UPDATABLE_COLUMNS)
    return _fetch_one(
        f'''UPDATE submissions SET {set_sql} WHERE id = ?
            RETURNING id, assignment_id, student_id, content, file_url, submitted_at, updated_at''',
        params + [submission_id],
        commit=True,
    )


def list_submissions_by_assignment(assignment_id):
    return _fetch_all(
        f'''SELECT {SUBMISSION_COLUMNS},
                   u.name AS student_name, u.email AS student_email,
                   g.id AS grade_id, g.grade, g.feedback, g.graded_at
            FROM submissions s
            JOIN users u ON u.id = s.student_id
            LEFT JOIN grades g ON g.submission_id = s.id
            WHERE s.assignment_id = ?
            ORDER BY s.submitted_at ASC''',
        (assignment_id,),
    )


def count_submissions(assignment_id):
    """Return (total, graded) submission counts for one assignment."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT COUNT(s.id), COUNT(g.id)
               FROM submissions s
               LEFT JOIN grades g ON g.submission_id = s.id
               WHERE s.assignment_id = ?''',
            (assignment_id,),
        )
        row = c.fetchone()
    if not row:
        return 0, 0
    return int(row[0] or 0), int(row[1] or 0)


# ==================== GRADES ====================

GRADE_COLUMNS = 'id, submission_id, teacher_id, grade, feedback, graded_at, updated_at'


def upsert_grade_with_cursor(c, submission_id, teacher_id, grade, feedback=None):
    db_execute(
        c,
        f'''INSERT INTO grades (submission_id, teacher_id, grade, feedback)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (submission_id) DO UPDATE SET
              teacher_id = excluded.teacher_id,
              grade = excluded.grade,
              feedback = excluded.feedback,
              updated_at = CURRENT_TIMESTAMP
            RETURNING {GRADE_COLUMNS}''',
        (submission_id, teacher_id, grade, feedback),
    )
    return row_to_dict(c.fetchone())


def upsert_grade(submission_id, teacher_id, grade, feedback=None):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return upsert_grade_with_cursor(c, submission_id, teacher_id, grade, feedback)


def upsert_grades(entries, teacher_id):
    """Write several grades atomically; entries carry submission_id, grade, feedback."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        return [
            upsert_grade_with_cursor(c, item['submission_id'], teacher_id, item['grade'], item.get('feedback'))
            for item in entries
        ]


def find_grade_by_submission(submission_id):
    return _fetch_one(f'SELECT {GRADE_COLUMNS} FROM grades WHERE submission_id = ?', (submission_id,))


def update_grade(submission_id, teacher_id, grade, feedback=None):
    return _fetch_one(
        f'''UPDATE grades
            SET grade = ?, feedback = ?, teacher_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE submission_id = ?
            RETURNING {GRADE_COLUMNS}''',
        (grade, feedback, teacher_id, submission_id),
        commit=True,
    )


def any_graded_submission(assignment_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT 1 FROM grades g
               JOIN submissions s ON s.id = g.submission_id
               WHERE s.assignment_id = ?
               LIMIT 1''',
            (assignment_id,),
        )
        return c.fetchone() is not None


def list_grades_with_assignment_for_student(student_id):
    """Every submission of a student with its grade (or NULLs) and assignment."""
    return _fetch_all(
        f'''SELECT {SUBMISSION_COLUMNS},
                   g.id AS grade_id, g.grade, g.feedback, g.graded_at, g.teacher_id,
                   a.title AS assignment_title, a.description AS assignment_description,
                   a.due_date, a.class_id, c.name AS class_name
            FROM submissions s
            JOIN assignments a ON a.id = s.assignment_id
            JOIN classes c ON c.id = a.class_id
            LEFT JOIN grades g ON g.submission_id = s.id
            WHERE s.student_id = ?
            ORDER BY s.submitted_at DESC''',
        (student_id,),
    )


def find_grade_for_student(grade_id, student_id):
    return _fetch_one(
        f'''SELECT g.id AS grade_id, g.grade, g.feedback, g.graded_at, g.teacher_id,
                   {SUBMISSION_COLUMNS},
                   a.title AS assignment_title, a.due_date, a.class_id, c.name AS class_name
            FROM grades g
            JOIN submissions s ON s.id = g.submission_id
            JOIN assignments a ON a.id = s.assignment_id
            JOIN classes c ON c.id = a.class_id
            WHERE g.id = ? AND s.student_id = ?''',
        (grade_id, student_id),
    )


def average_grade(class_id=None):
    """Return (average, count) across all grades or one class's grades."""
    query = '''SELECT AVG(g.grade), COUNT(g.id)
               FROM grades g
               JOIN submissions s ON s.id = g.submission_id
               JOIN assignments a ON a.id = s.assignment_id'''
    params = None
    if class_id:
        query += ' WHERE a.class_id = ?'
        params = (class_id,)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        row = c.fetchone()
    if not row or row[0] is None:
        return 0.0, 0
    return float(row[0]), int(row[1] or 0)


# ==================== SESSIONS ====================

SESSION_COLUMNS = 'id, user_id, refresh_token_hash, expires_at, user_agent, ip_address, created_at, updated_at'


def create_session(user_id, token_hash, expires_at, user_agent=None, ip_address=None):
    purge_expired_sessions()
    return _fetch_one(
        f'''INSERT INTO sessions (user_id, refresh_token_hash, expires_at, user_agent, ip_address)
            VALUES (?, ?, ?, ?, ?)
            RETURNING {SESSION_COLUMNS}''',
        (user_id, token_hash, expires_at, user_agent, ip_address),
        commit=True,
    )


def find_active_session(token_hash):
    return _fetch_one(
        f'''SELECT {SESSION_COLUMNS} FROM sessions
            WHERE refresh_token_hash = ? AND expires_at > ?''',
        (token_hash, _utcnow()),
    )


def delete_session(token_hash):
    return _execute('DELETE FROM sessions WHERE refresh_token_hash = ?', (token_hash,)) > 0


def extend_session(token_hash, expires_at):
    return _execute(
        '''UPDATE sessions SET expires_at = ?, updated_at = CURRENT_TIMESTAMP
           WHERE refresh_token_hash = ?''',
        (expires_at, token_hash),
    ) > 0


def delete_sessions_for_user(user_id):
    return _execute('DELETE FROM sessions WHERE user_id = ?', (user_id,))


def count_sessions_for_user(user_id):
    return _fetch_count(
        'SELECT COUNT(*) FROM sessions WHERE user_id = ? AND expires_at > ?',
        (user_id, _utcnow()),
    )


def purge_expired_sessions():
    return _execute('DELETE FROM sessions WHERE expires_at <= ?', (_utcnow(),))


# ==================== OAUTH ACCOUNTS ====================

OAUTH_COLUMNS = '''id, user_id, provider, provider_account_id, access_token, refresh_token,
                   expires_at, token_type, scope, id_token, created_at, updated_at'''


def find_oauth_account(provider, provider_account_id):
    return _fetch_one(
        f'SELECT {OAUTH_COLUMNS} FROM oauth_accounts WHERE provider = ? AND provider_account_id = ?',
        (provider, provider_account_id),
    )


def find_oauth_account_for_user(user_id, provider):
    return _fetch_one(
        f'SELECT {OAUTH_COLUMNS} FROM oauth_accounts WHERE user_id = ? AND provider = ?',
        (user_id, provider),
    )


def list_oauth_accounts_for_user(user_id):
    return _fetch_all(
        f'SELECT {OAUTH_COLUMNS} FROM oauth_accounts WHERE user_id = ? ORDER BY created_at ASC',
        (user_id,),
    )


def create_oauth_account(user_id, provider, provider_account_id, tokens):
    return _fetch_one(
        f'''INSERT INTO oauth_accounts
            (user_id, provider, provider_account_id, access_token, refresh_token,
             expires_at, token_type, scope, id_token)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING {OAUTH_COLUMNS}''',
        (
            user_id,
            provider,
            provider_account_id,
            tokens.get('access_token'),
            tokens.get('refresh_token'),
            tokens.get('expires_at'),
            tokens.get('token_type'),
            tokens.get('scope'),
            tokens.get('id_token'),
        ),
        commit=True,
    )


def update_oauth_tokens(account_id, tokens):
    """Refresh stored provider tokens; a missing refresh token keeps the old one."""
    return _fetch_one(
        f'''UPDATE oauth_accounts
            SET access_token = ?,
                refresh_token = COALESCE(?, refresh_token),
                expires_at = ?,
                id_token = COALESCE(?, id_token),
                updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            RETURNING {OAUTH_COLUMNS}''',
        (
            tokens.get('access_token'),
            tokens.get('refresh_token'),
            tokens.get('expires_at'),
            tokens.get('id_token'),
            account_id,
        ),
        commit=True,
    )


def delete_oauth_account(account_id):
    return _execute('DELETE FROM oauth_accounts WHERE id = ?', (account_id,)) > 0


def count_oauth_accounts_for_user(user_id):
    return _fetch_count('SELECT COUNT(*) FROM oauth_accounts WHERE user_id = ?', (user_id,))


# ==================== PASSWORD RESETS ====================

def create_password_reset(user_id, token_hash, expires_at):
    _execute(
        'INSERT INTO password_resets (token_hash, user_id, expires_at) VALUES (?, ?, ?)',
        (token_hash, user_id, expires_at),
    )


def consume_password_reset(token_hash):
    """Delete the reset row and return its user id when it was still valid."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'DELETE FROM password_resets WHERE token_hash = ? RETURNING user_id, expires_at',
            (token_hash,),
        )
        row = c.fetchone()
    if not row:
        return None
    if row['expires_at'] <= _utcnow():
        return None
    return row['user_id']


# ==================== LOGIN THROTTLING ====================

ATTEMPT_KEY_WHERE = 'endpoint = ? AND email = ? AND ip_address = ?'


def _attempt_key(endpoint, email, ip_address):
    return (
        (endpoint or '').strip().lower(),
        (email or '').strip().lower(),
        (ip_address or '').strip(),
    )


def _next_failure_count(row, now):
    """Failure count after one more miss, or None while the key is locked."""
    if not row:
        return 1
    failures, last_failed_at, locked_until = row[0], row[1], row[2]
    if locked_until and locked_until > now:
        return None
    # A quiet spell longer than the lock window starts a fresh count.
    if not last_failed_at or now - last_failed_at > timedelta(minutes=LOGIN_LOCK_MINUTES):
        return 1
    return int(failures or 0) + 1


def is_login_blocked(endpoint, email, ip_address):
    """Return (blocked, wait_minutes)."""
    purge_old_login_attempts()
    now = _utcnow()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'SELECT failures, locked_until FROM login_attempts WHERE {ATTEMPT_KEY_WHERE}',
            _attempt_key(endpoint, email, ip_address),
        )
        row = c.fetchone()
    locked_until = row[1] if row else None
    if not locked_until or locked_until <= now:
        return False, 0
    return True, max(1, math.ceil((locked_until - now).total_seconds() / 60))


def register_failed_login(endpoint, email, ip_address):
    purge_old_login_attempts()
    key = _attempt_key(endpoint, email, ip_address)
    now = _utcnow()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT failures, last_failed_at, locked_until FROM login_attempts
                WHERE {ATTEMPT_KEY_WHERE} FOR UPDATE''',
            key,
        )
        failures = _next_failure_count(c.fetchone(), now)
        if failures is None:
            return
        locked_until = None
        if failures >= LOGIN_MAX_ATTEMPTS:
            locked_until = now + timedelta(minutes=LOGIN_LOCK_MINUTES)
        db_execute(
            c,
            '''INSERT INTO login_attempts
                   (endpoint, email, ip_address, failures, first_failed_at, last_failed_at, locked_until)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (endpoint, email, ip_address) DO UPDATE SET
                   failures = EXCLUDED.failures,
                   first_failed_at = CASE WHEN EXCLUDED.failures = 1
                                          THEN EXCLUDED.first_failed_at
                                          ELSE login_attempts.first_failed_at END,
                   last_failed_at = EXCLUDED.last_failed_at,
                   locked_until = EXCLUDED.locked_until''',
            key + (failures, now, now, locked_until),
        )


def clear_failed_login(endpoint, email, ip_address):
    _execute(f'DELETE FROM login_attempts WHERE {ATTEMPT_KEY_WHERE}', _attempt_key(endpoint, email, ip_address))


def purge_old_login_attempts(max_age_days=7):
    cutoff = _utcnow() - timedelta(days=max_age_days)
    _execute(
        '''DELETE FROM login_attempts
           WHERE COALESCE(locked_until, last_failed_at) < ?''',
        (cutoff,),
    )
