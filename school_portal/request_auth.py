"""Auth cookies, request authentication and role guards shared by API and pages."""

import os
from functools import wraps

from flask import g, request

from . import security
from . import services
from .errors import ForbiddenError, UnauthorizedError

ACCESS_COOKIE = 'access_token'
REFRESH_COOKIE = 'refresh_token'


def _env_flag(name, default=''):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes')


def client_ip():
    """Best-effort client IP extraction."""
    xff = (request.headers.get('X-Forwarded-For') or '').strip()
    if _env_flag('TRUST_PROXY_HEADERS') and xff:
        # Use the left-most client IP when running behind a trusted reverse proxy.
        for part in xff.split(','):
            ip = (part or '').strip()
            if ip:
                return ip
    return (request.remote_addr or '').strip() or 'unknown'


def set_auth_cookies(response, tokens):
    secure = _env_flag('COOKIE_SECURE')
    response.set_cookie(
        ACCESS_COOKIE,
        tokens['access_token'],
        max_age=int(security.access_token_ttl().total_seconds()),
        httponly=True,
        secure=secure,
        samesite='Lax',
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens['refresh_token'],
        max_age=int(security.refresh_token_ttl().total_seconds()),
        httponly=True,
        secure=secure,
        samesite='Lax',
    )
    return response


def clear_auth_cookies(response):
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE)
    return response


def access_token_from_request():
    header = (request.headers.get('Authorization') or '').strip()
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return request.cookies.get(ACCESS_COOKIE)


def current_user():
    """The authenticated user for this request, loaded once; raises on bad tokens."""
    if 'current_user' not in g:
        token = access_token_from_request()
        if not token:
            raise UnauthorizedError('Authentication required')
        g.current_user = services.authenticate(token)
    return g.current_user


def require_auth(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        current_user()
        return view(*args, **kwargs)
    return wrapped


def require_role(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            user = current_user()
            if user['role'] not in roles:
                raise ForbiddenError(f"Access denied. Required roles: {', '.join(roles)}")
            return view(*args, **kwargs)
        return wrapped
    return decorator
