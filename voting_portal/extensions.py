# voting_portal/extensions.py

from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()  # Database ORM
migrate = Migrate()  # DB migrations
jwt = JWTManager()  # Session cookie names and flags

# Limits are applied by the rate-limit pipeline stage, not per-route decorators.
limiter = Limiter(key_func=get_remote_address)
