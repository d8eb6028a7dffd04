"""Chat command interpreter.

start → create (or reset) the subscription, stop → remove it,
anything else → help text. Store errors propagate to the caller.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from app.core.subscribers import SubscriberStore
from app.models import Subscription, WebhookEvent, utc_now

logger = logging.getLogger(__name__)

COMMAND_START = "start"
COMMAND_STOP = "stop"

REPLY_STARTED = "定期通知を開始しました！\n止める場合は 'stop' と送ってください。"
REPLY_STOPPED = "定期通知を停止しました。\n再開する場合は 'start' と送ってください。"
REPLY_HELP = "コマンドが認識できません。\n'start' で通知開始\n'stop' で通知停止\nを行います。"


def normalize_command(text: str) -> str:
    """Trim surrounding whitespace and lowercase."""
    return text.strip().lower()


class CommandInterpreter:
    """Turns one inbound event into a subscription change and a reply."""

    def __init__(self, store: SubscriberStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def handle(self, event: WebhookEvent) -> str | None:
        """Apply the command carried by event.

        Args:
            event: Validated webhook event

        Returns:
            Reply text, or None for events that are ignored (not a text
            message, or no resolvable user ID)

        Raises:
            StoreError: If the store mutation fails
        """
        text = event.text
        user_id = event.user_id
        if text is None or not user_id:
            return None

        command = normalize_command(text)

        if command == COMMAND_START:
            await self.store.put(user_id, Subscription.new(self.clock()))
            logger.info(f"User registered: {user_id}")
            return REPLY_STARTED

        if command == COMMAND_STOP:
            await self.store.delete(user_id)
            logger.info(f"User unregistered: {user_id}")
            return REPLY_STOPPED

        return REPLY_HELP
