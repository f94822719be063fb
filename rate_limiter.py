"""
Rate limiting configuration for the governance workflow API
"""
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import os


def get_limiter_storage_uri():
    """
    Get storage URI for rate limiter
    Uses Redis in production, memory in development
    """
    redis_url = os.environ.get('REDIS_URL')
    if redis_url:
        return redis_url
    return "memory://"


def _limit_key():
    """Key decisions and executions by user when logged in, else by address"""
    from flask import session
    user_id = session.get('user_id')
    if user_id:
        return f'user:{user_id}'
    return get_remote_address()


limiter = Limiter(
    key_func=_limit_key,
    storage_uri=get_limiter_storage_uri(),
    default_limits=["1000 per hour", "100 per minute"],
    strategy="fixed-window",
)


def init_limiter(app):
    """Initialize rate limiter with Flask app"""
    limiter.init_app(app)
    return limiter
