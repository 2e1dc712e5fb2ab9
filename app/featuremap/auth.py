from __future__ import annotations

import uuid

from flask import current_app, g, request, session

from app.featuremap.db import db_session
from app.featuremap.models import User


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).

    Sign-in happens upstream; whoever issues the session stores the user id
    under session["user_id"].
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, str(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None
