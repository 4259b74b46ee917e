"""
Set a user's password from the command line and sign them out everywhere.

Usage:
  RESET_EMAIL=user@school.edu RESET_PASSWORD='New-Passw0rd!' python reset_password.py
"""

import os

import psycopg2
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

from school_portal.security import password_problems


def main():
    load_dotenv()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    email = (os.getenv("RESET_EMAIL") or "").strip().lower()
    raw_password = os.getenv("RESET_PASSWORD") or ""

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not email:
        raise RuntimeError("RESET_EMAIL is required.")
    if not raw_password:
        raise RuntimeError("RESET_PASSWORD is required.")
    problems = password_problems(raw_password)
    if problems:
        raise RuntimeError("RESET_PASSWORD is too weak: " + "; ".join(problems))

    password_hash = generate_password_hash(raw_password)

    with psycopg2.connect(database_url) as conn:
        with conn.cursor() as c:
            c.execute(
                """UPDATE users
                   SET password_hash = %s, updated_at = CURRENT_TIMESTAMP
                   WHERE LOWER(email) = LOWER(%s)
                   RETURNING id""",
                (password_hash, email),
            )
            row = c.fetchone()
            revoked = 0
            if row:
                c.execute("DELETE FROM sessions WHERE user_id = %s", (row[0],))
                revoked = int(c.rowcount or 0)
        conn.commit()

    if row:
        print(f"Password reset successfully for {email}; {revoked} session(s) revoked.")
    else:
        print(f"No user found for {email}.")


if __name__ == "__main__":
    main()
