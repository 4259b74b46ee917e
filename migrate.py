"""
Apply database migrations without starting the web server.

Usage:
  python migrate.py

Uses Flask-Migrate (Alembic) with the revisions in migrations/versions.
"""

import logging
import os
import sys


def main():
    # Keep app startup hooks disabled; run migration explicitly below.
    os.environ['RUN_STARTUP_DDL'] = '0'
    os.environ['RUN_STARTUP_BOOTSTRAP'] = '0'

    from flask_migrate import upgrade
    from school_portal.app import app, create_default_admin

    try:
        print("Applying database migrations...")
        with app.app_context():
            upgrade(directory='migrations')
        print("Migrations completed successfully.")
    except Exception as exc:
        logging.exception("Migration failed")
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(1)

    if os.environ.get('MIGRATE_BOOTSTRAP_ADMIN', '1').strip().lower() in ('1', 'true', 'yes'):
        create_default_admin()


if __name__ == '__main__':
    main()
