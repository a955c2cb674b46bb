from functools import wraps
from flask import g
from models import db
from security.session import get_session_from_request
from models.user import User
from utils.responses import send_error

def load_current_user():
    sess = get_session_from_request()
    if not sess:
        g.user = None
        g.session = None
        return
    g.session = sess
    g.user = db.session.get(User, sess.user_id)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return send_error("Authentication required", 401)
        return fn(*args, **kwargs)
    return wrapper
