"""
Domain model package.
"""
from notifycore.models.notification import Notification, NotificationType  # noqa: F401
