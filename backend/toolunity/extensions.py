# Overview: Flask extension instances for database, migrations and external collaborators.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .notifications import Mailer
from .payments import PaymentGateway
from .services.rate_limit_service import RateLimiter

db = SQLAlchemy()
migrate = Migrate()
payments = PaymentGateway()
mailer = Mailer()
rate_limiter = RateLimiter()
