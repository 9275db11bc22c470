"""
Rebalancing Engine - Notifications.

============================================================
PURPOSE
============================================================
Tells owners about operation events.

RULES:
- Only events enabled in the strategy's settings are sent
- Delivery is best effort: a failed dispatch is recorded on the
  operation as undelivered and never fails the operation

DISPATCHERS:
- LoggingNotificationDispatcher: writes to the log
- TelegramNotificationDispatcher: Telegram Bot API over aiohttp

============================================================
"""

import html
import logging
import os
from typing import Dict, Optional

import aiohttp

from core.clock import ClockProtocol, ClockFactory

from .adapters.base import NotificationDispatcher, NotificationRequest
from .config import NotificationConfig
from .types import (
    NotificationEvent,
    NotificationRecord,
    Operation,
    OperationStatus,
    Strategy,
)


logger = logging.getLogger(__name__)


EVENT_FOR_STATUS: Dict[OperationStatus, NotificationEvent] = {
    OperationStatus.WAITING_APPROVAL: NotificationEvent.WAITING_APPROVAL,
    OperationStatus.EXECUTING: NotificationEvent.STARTED,
    OperationStatus.COMPLETED: NotificationEvent.COMPLETED,
    OperationStatus.FAILED: NotificationEvent.FAILED,
    OperationStatus.PARTIAL: NotificationEvent.PARTIAL,
    OperationStatus.CANCELLED: NotificationEvent.CANCELLED,
}

TITLES: Dict[NotificationEvent, str] = {
    NotificationEvent.STARTED: "Rebalancing started",
    NotificationEvent.WAITING_APPROVAL: "Rebalancing awaits your approval",
    NotificationEvent.COMPLETED: "Rebalancing completed",
    NotificationEvent.FAILED: "Rebalancing failed",
    NotificationEvent.PARTIAL: "Rebalancing partially completed",
    NotificationEvent.CANCELLED: "Rebalancing cancelled",
}


# ============================================================
# NOTIFIER
# ============================================================

class OperationNotifier:
    """
    Applies owner preferences and records what was sent.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        config: Optional[NotificationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._dispatcher = dispatcher
        self._config = config or NotificationConfig()
        self._clock = clock or ClockFactory.get_clock()

    async def notify_status(self, operation: Operation, strategy: Strategy) -> Optional[NotificationRecord]:
        """Notify about the operation's current status, if it maps to an event."""
        event = EVENT_FOR_STATUS.get(operation.status)
        if event is None:
            return None
        return await self.notify(operation, strategy, event)

    async def notify(
        self,
        operation: Operation,
        strategy: Strategy,
        event: NotificationEvent,
    ) -> Optional[NotificationRecord]:
        """
        Send one event notification.

        Args:
            operation: Operation the event belongs to (record appended)
            strategy: Owning strategy (preferences)
            event: Event to send

        Returns:
            The record, or None when preferences filtered it out
        """
        settings = strategy.notifications
        if not self._config.enabled or not settings.enabled or event not in settings.events:
            return None

        request = NotificationRequest(
            operation_id=operation.operation_id,
            owner_id=operation.owner_id,
            event=event,
            channels=list(settings.channels),
            title=TITLES[event],
            message=self._message(operation, strategy, event),
            details={
                "strategy_id": strategy.strategy_id,
                "status": operation.status.value,
                "transactions": len(operation.transactions),
            },
        )

        try:
            delivered = await self._dispatcher.dispatch(request)
        except Exception as e:
            logger.warning(
                f"Notification {event.value} for operation {operation.operation_id} "
                f"not delivered: {e}"
            )
            delivered = False

        record = NotificationRecord(
            event=event,
            timestamp=self._clock.now(),
            channels=list(settings.channels),
            delivered=delivered,
        )
        operation.notifications_sent.append(record)
        return record

    @staticmethod
    def _message(operation: Operation, strategy: Strategy, event: NotificationEvent) -> str:
        base = f"Strategy '{strategy.name}': "
        if event == NotificationEvent.WAITING_APPROVAL:
            return base + f"{len(operation.transactions)} transactions are ready for review."
        if event == NotificationEvent.STARTED:
            return base + f"executing {len(operation.transactions)} transactions."
        if event == NotificationEvent.COMPLETED:
            return base + f"all {operation.completed_steps} transactions completed."
        if event == NotificationEvent.PARTIAL:
            return base + (
                f"{operation.completed_steps} of {len(operation.transactions)} "
                f"transactions completed."
            )
        if event == NotificationEvent.FAILED:
            reason = operation.error.message if operation.error else "unknown error"
            return base + f"failed: {reason}"
        return base + "operation cancelled."


# ============================================================
# DISPATCHERS
# ============================================================

class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log."""

    async def dispatch(self, request: NotificationRequest) -> bool:
        logger.info(
            f"[notify {request.owner_id}] {request.title}: {request.message} "
            f"(operation {request.operation_id})"
        )
        return True


class TelegramNotificationDispatcher(NotificationDispatcher):
    """
    Sends notifications via the Telegram Bot API.

    Credentials come from the environment variables named in the
    configuration.
    """

    def __init__(self, config: NotificationConfig):
        self._config = config
        self._bot_token = os.environ.get(config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(config.telegram_chat_id_env, "")
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self._bot_token and self._chat_id)

    async def dispatch(self, request: NotificationRequest) -> bool:
        if not self.is_configured:
            logger.debug(f"Telegram not configured, logging notification: {request.title}")
            return False

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
                )

            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
            payload = {
                "chat_id": self._chat_id,
                "text": self._format_message(request),
                "parse_mode": "HTML",
            }

            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    logger.info(f"Notification sent: {request.event.value} {request.operation_id}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False

        except aiohttp.ClientError as e:
            logger.error(f"Failed to send Telegram notification: {e}")
            return False

    @staticmethod
    def _format_message(request: NotificationRequest) -> str:
        lines = [
            f"<b>{html.escape(request.title)}</b>",
            f"<b>Operation:</b> <code>{html.escape(request.operation_id)}</code>",
            "",
            html.escape(request.message),
        ]
        if request.details:
            lines.append("\n<b>Details:</b>")
            for key, value in request.details.items():
                lines.append(f"  • {html.escape(str(key))}: {html.escape(str(value))}")
        return "\n".join(lines)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
