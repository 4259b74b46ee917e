"""Initial schema for the school portal.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create users, classes, coursework, auth tables and indexes."""

    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    email VARCHAR(255) UNIQUE NOT NULL,
                    password_hash TEXT,
                    role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('admin', 'teacher', 'student')),
                    name VARCHAR(255) NOT NULL,
                    suspended BOOLEAN NOT NULL DEFAULT FALSE,
                    current_login_at TIMESTAMPTZ,
                    last_login_at TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS classes (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    name VARCHAR(255) NOT NULL,
                    teacher_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
                    description TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS class_students (
                    class_id UUID NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
                    student_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    enrolled_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (class_id, student_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS assignments (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    class_id UUID NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
                    title VARCHAR(255) NOT NULL,
                    description TEXT NOT NULL,
                    due_date TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS submissions (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    assignment_id UUID NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
                    student_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    content TEXT NOT NULL,
                    file_url VARCHAR(500),
                    submitted_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (assignment_id, student_id)
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS grades (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    submission_id UUID UNIQUE NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
                    teacher_id UUID NOT NULL REFERENCES users(id) ON DELETE RESTRICT,
                    grade NUMERIC(5, 2) NOT NULL CHECK (grade >= 0 AND grade <= 100),
                    feedback TEXT,
                    graded_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS oauth_accounts (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
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
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS sessions (
                    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    refresh_token_hash VARCHAR(64) UNIQUE NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    user_agent TEXT,
                    ip_address TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS password_resets (
                    token_hash VARCHAR(64) PRIMARY KEY,
                    user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    expires_at TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS login_attempts (
                    endpoint TEXT NOT NULL,
                    email TEXT NOT NULL,
                    ip_address TEXT NOT NULL,
                    failures INTEGER NOT NULL DEFAULT 0,
                    first_failed_at TIMESTAMPTZ,
                    last_failed_at TIMESTAMPTZ,
                    locked_until TIMESTAMPTZ,
                    PRIMARY KEY (endpoint, email, ip_address)
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_classes_teacher_id ON classes(teacher_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_class_students_student_id ON class_students(student_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_assignments_class_id ON assignments(class_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_assignments_due_date ON assignments(due_date)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_submissions_student_id ON submissions(student_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_grades_teacher_id ON grades(teacher_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_oauth_accounts_user_id ON oauth_accounts(user_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS login_attempts CASCADE')
    op.execute('DROP TABLE IF EXISTS password_resets CASCADE')
    op.execute('DROP TABLE IF EXISTS sessions CASCADE')
    op.execute('DROP TABLE IF EXISTS oauth_accounts CASCADE')
    op.execute('DROP TABLE IF EXISTS grades CASCADE')
    op.execute('DROP TABLE IF EXISTS submissions CASCADE')
    op.execute('DROP TABLE IF EXISTS assignments CASCADE')
    op.execute('DROP TABLE IF EXISTS class_students CASCADE')
    op.execute('DROP TABLE IF EXISTS classes CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
