"""
Shared Flask extension instances.

Created unbound here so models, engines and blueprints can import them
without circular imports; create_app() binds them to the application.
"""

import os

from flask import request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()


def client_address():
    """Rate-limit key: first hop of X-Forwarded-For behind the proxy, else the peer."""
    forwarded_for = request.headers.get('X-Forwarded-For', '')
    first_hop = forwarded_for.split(',')[0].strip()
    return first_hop or get_remote_address()


def limiter_storage_uri(environ=os.environ):
    """
    Pick the Flask-Limiter backend.

    RATELIMIT_STORAGE_URI wins; CI runs use process memory; otherwise the
    shared redis given by REDIS_URL (or a local one).
    """
    if environ.get('RATELIMIT_STORAGE_URI'):
        return environ['RATELIMIT_STORAGE_URI']
    if environ.get('CI') or environ.get('GITHUB_ACTIONS'):
        return 'memory://'
    return environ.get('REDIS_URL', 'redis://localhost:6379')


limiter = Limiter(
    key_func=client_address,
    default_limits=[os.environ.get('RATELIMIT_DEFAULT', "500 per day;200 per hour")],
    storage_uri=limiter_storage_uri(),
    strategy="fixed-window",
)
