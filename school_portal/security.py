"""Password hashing and access / refresh token helpers."""

import hashlib
import os
import re
import secrets
from datetime import datetime, timedelta, timezone

import jwt
from werkzeug.security import generate_password_hash, check_password_hash

from .errors import TokenExpiredError, TokenInvalidError

ROLES = ('admin', 'teacher', 'student')
JWT_ALGORITHM = 'HS256'
DEV_JWT_SECRET = 'dev-jwt-secret-change-me-dev-jwt-secret'
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _env_flag(name, default=''):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


def _env_int(name, default):
    try:
        return int(os.environ.get(name, '') or default)
    except ValueError:
        return default


def access_token_ttl():
    return timedelta(minutes=_env_int('ACCESS_TOKEN_TTL_MINUTES', 15))


def refresh_token_ttl():
    return timedelta(days=_env_int('REFRESH_TOKEN_TTL_DAYS', 7))


def password_reset_ttl():
    return timedelta(minutes=_env_int('PASSWORD_RESET_TTL_MINUTES', 30))


def get_jwt_secret():
    """Signing key for access tokens, read on every call so tests can swap it."""
    secret = os.environ.get('JWT_SECRET', '').strip()
    if not secret:
        if _env_flag('ALLOW_INSECURE_DEFAULTS'):
            return DEV_JWT_SECRET
        raise RuntimeError("JWT_SECRET is required. Set JWT_SECRET or enable ALLOW_INSECURE_DEFAULTS for local development.")
    return secret


def hash_password(password):
    """Hash a password."""
    return generate_password_hash(password)


def check_password(hashed, password):
    """Verify a password. Accounts created through OAuth have no hash and never match."""
    if not hashed or not password:
        return False
    return check_password_hash(hashed, password)


def password_problems(password):
    """Return the list of password policy rules the value breaks."""
    password = password or ''
    problems = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f'Password must be at least {PASSWORD_MIN_LENGTH} characters')
    if len(password) > PASSWORD_MAX_LENGTH:
        problems.append(f'Password must be at most {PASSWORD_MAX_LENGTH} characters')
    if not re.search(r'[A-Z]', password):
        problems.append('Password must contain at least one uppercase letter')
    if not re.search(r'[a-z]', password):
        problems.append('Password must contain at least one lowercase letter')
    if not re.search(r'[0-9]', password):
        problems.append('Password must contain at least one number')
    if not re.search(r'[^A-Za-z0-9]', password):
        problems.append('Password must contain at least one special character')
    return problems


def generate_access_token(user_id, role, expires_in=None):
    """Issue a signed HS256 access token carrying the user id and role."""
    if not user_id or not role:
        raise ValueError('user_id and role are required to issue an access token')
    now = datetime.now(timezone.utc)
    payload = {
        'userId': str(user_id),
        'role': role,
        'iat': now,
        'exp': now + (expires_in or access_token_ttl()),
    }
    return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_access_token(token):
    """Decode an access token and return its claims."""
    if not token:
        raise TokenInvalidError('Token is required')
    try:
        payload = jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError() from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalidError() from exc
    if not isinstance(payload.get('userId'), str) or not isinstance(payload.get('role'), str):
        raise TokenInvalidError('Invalid token payload')
    if payload['role'] not in ROLES:
        raise TokenInvalidError('Invalid token payload')
    return payload


def generate_refresh_token():
    """Opaque refresh token: 32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def generate_reset_token():
    return secrets.token_urlsafe(32)


def hash_token(token):
    """SHA-256 digest used to store refresh and reset tokens."""
    return hashlib.sha256((token or '').encode('utf-8')).hexdigest()
