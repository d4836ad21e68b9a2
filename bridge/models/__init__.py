# Access Bridge: database models
# Import all models here for SQLAlchemy discovery

from bridge.models.delivered_event import DeliveredEvent   # noqa
