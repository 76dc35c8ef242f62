"""
Admin bearer authentication for API views.

Admin logins receive an HS256 JWT carrying the user id, signed with
ADMIN_TOKEN_SECRET and valid for ADMIN_TOKEN_MAX_AGE seconds.

Usage:
    @require_admin
    def my_api_view(request):
        # request.user is the authenticated staff account
        ...
"""

import functools
import time

import jwt
from django.conf import settings
from django.contrib.auth import get_user_model

from tokens.exceptions import Forbidden


def issue_admin_token(user) -> str:
    now = int(time.time())
    payload = {
        "user_id": str(user.pk),
        "iat": now,
        "exp": now + settings.ADMIN_TOKEN_MAX_AGE,
    }
    return jwt.encode(payload, settings.ADMIN_TOKEN_SECRET, algorithm="HS256")


def verify_admin_token(raw_token: str):
    """Return the staff user for a valid token, else None."""
    try:
        payload = jwt.decode(raw_token, settings.ADMIN_TOKEN_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        return None

    user_id = payload.get("user_id")
    if not user_id:
        return None

    User = get_user_model()
    try:
        user = User.objects.get(pk=user_id, is_active=True)
    except (User.DoesNotExist, ValueError):
        return None

    if not user.is_staff:
        return None
    return user


def require_admin(view_func):
    """Decorator that authenticates via `Authorization: Bearer <token>`."""

    @functools.wraps(view_func)
    def wrapper(request, *args, **kwargs):
        header = request.headers.get("Authorization", "")
        scheme, _, raw_token = header.partition(" ")
        if scheme.lower() != "bearer" or not raw_token.strip():
            return Forbidden("Missing admin bearer token").to_response()

        user = verify_admin_token(raw_token.strip())
        if user is None:
            return Forbidden("Invalid or expired admin token").to_response()

        request.user = user
        return view_func(request, *args, **kwargs)

    return wrapper
