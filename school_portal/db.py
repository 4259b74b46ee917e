"""PostgreSQL connection helpers and schema bootstrap.

Queries are written with `?` placeholders and translated for psycopg2.
Run `python -m school_portal.db` to create the schema without starting the app.
"""

import logging
import os
from contextlib import contextmanager

import psycopg2
from psycopg2.extras import DictCursor
from dotenv import load_dotenv

load_dotenv()

PK_COLUMN_SQL = 'UUID PRIMARY KEY DEFAULT gen_random_uuid()'


def get_database_url():
    return os.environ.get('DATABASE_URL', '').strip()


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def get_db():
    """Create a PostgreSQL DB connection."""
    database_url = get_database_url()
    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    return psycopg2.connect(database_url, cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Context manager for PostgreSQL connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


def row_to_dict(row):
    return dict(row) if row is not None else None


def rows_to_dicts(rows):
    return [dict(row) for row in rows or []]


SCHEMA_STATEMENTS = [
    f'''CREATE TABLE IF NOT EXISTS users (
            id {PK_COLUMN_SQL},
            email VARCHAR(255) UNIQUE NOT NULL,
            password_hash TEXT,
            role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('admin', 'teacher', 'student')),
            name VARCHAR(255) NOT NULL,
            suspended BOOLEAN NOT NULL DEFAULT FALSE,
            current_login_at TIMESTAMPTZ,
            last_login_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS classes (
            id {PK_COLUMN_SQL},
            name VARCHAR(255) NOT NULL,
            teacher_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
            description TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS class_students (
            class_id UUID NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            student_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            enrolled_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (class_id, student_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS assignments (
            id {PK_COLUMN_SQL},
            class_id UUID NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
            title VARCHAR(255) NOT NULL,
            description TEXT NOT NULL,
            due_date TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS submissions (
            id {PK_COLUMN_SQL},
            assignment_id UUID NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
            student_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            file_url VARCHAR(500),
            submitted_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (assignment_id, student_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS grades (
            id {PK_COLUMN_SQL},
            submission_id UUID UNIQUE NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
            teacher_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
            grade NUMERIC(5, 2) NOT NULL CHECK (grade >= 0 AND grade <= 100),
            feedback TEXT,
            graded_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )''',
    f'''CREATE TABLE IF NOT EXISTS oauth_accounts (
            id {PK_COLUMN_SQL},
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            provider VARCHAR(50) NOT NULL,
            provider_account_id VARCHAR(255) NOT NULL,
            access_token TEXT,
            refresh_token TEXT,
            expires_at TIMESTAMPTZ,
            token_type VARCHAR(50),
            scope TEXT,
            id_token TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (provider, provider_account_id)
        )''',
    f'''CREATE TABLE IF NOT EXISTS sessions (
            id {PK_COLUMN_SQL},
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            refresh_token_hash VARCHAR(64) UNIQUE NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            user_agent TEXT,
            ip_address TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS password_resets (
            token_hash VARCHAR(64) PRIMARY KEY,
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS login_attempts (
            endpoint TEXT NOT NULL,
            email TEXT NOT NULL,
            ip_address TEXT NOT NULL,
            failures INTEGER NOT NULL DEFAULT 0,
            first_failed_at TIMESTAMPTZ,
            last_failed_at TIMESTAMPTZ,
            locked_until TIMESTAMPTZ,
            PRIMARY KEY (endpoint, email, ip_address)
        )''',
    'CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)',
    'CREATE INDEX IF NOT EXISTS idx_classes_teacher_id ON classes(teacher_id)',
    'CREATE INDEX IF NOT EXISTS idx_class_students_student_id ON class_students(student_id)',
    'CREATE INDEX IF NOT EXISTS idx_assignments_class_id ON assignments(class_id)',
    'CREATE INDEX IF NOT EXISTS idx_assignments_due_date ON assignments(due_date)',
    'CREATE INDEX IF NOT EXISTS idx_submissions_student_id ON submissions(student_id)',
    'CREATE INDEX IF NOT EXISTS idx_grades_teacher_id ON grades(teacher_id)',
    'CREATE INDEX IF NOT EXISTS idx_oauth_accounts_user_id ON oauth_accounts(user_id)',
    'CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id)',
    'CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)',
]


def init_db():
    """Create every table and index if missing."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            db_execute(c, statement)
    logging.info("Database schema verified (%d statements).", len(SCHEMA_STATEMENTS))


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    init_db()
    print("Database initialized successfully.")
