"""
Notification Sinks

Default implementations of the human-facing notification surface.
"""

import structlog

from ...domain.sync.repository_interfaces import NotificationSink, UndoCallback

logger = structlog.get_logger(__name__)


class LoggingNotificationSink(NotificationSink):
    """Writes lifecycle messages to the structured log."""

    def notify_pending(self, message: str) -> None:
        logger.info("notification", notice="pending", message=message)

    def notify_success(self, message: str) -> None:
        logger.info("notification", notice="success", message=message)

    def notify_error(self, message: str) -> None:
        logger.warning("notification", notice="error", message=message)

    def notify_undoable(self, message: str, on_undo: UndoCallback) -> None:
        logger.info("notification", notice="undoable", message=message)


class NullNotificationSink(NotificationSink):
    """Discards every message."""

    def notify_pending(self, message: str) -> None:
        pass

    def notify_success(self, message: str) -> None:
        pass

    def notify_error(self, message: str) -> None:
        pass

    def notify_undoable(self, message: str, on_undo: UndoCallback) -> None:
        pass
