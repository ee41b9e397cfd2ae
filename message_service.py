# message_service.py

import logging
from typing import Any, List

from shared.database import MessageStore
from shared.delivery import DeliveryGateway
from shared.errors import DeliveryError, NotFoundError, ValidationError
from shared.metrics import MESSAGES_CANCELLED, MESSAGES_SCHEDULED
from shared.models import DeliveryOutcome, MessageStatus, ScheduledMessage
from shared.utils import generate_message_id, normalize_timestamp

logger = logging.getLogger(__name__)


class MessageService:
    """
    Жизненный цикл сообщений: создание, отмена, список и немедленная отправка.

    Переход pending -> sent выполняет только планировщик (scheduler_logic),
    pending -> cancelled только cancel(). Записи никогда не удаляются.
    """

    def __init__(self, store: MessageStore, gateway: DeliveryGateway):
        self.store = store
        self.gateway = gateway

    def schedule(self, channel: Any, text: Any, scheduled_at: Any) -> str:
        """
        Ставит сообщение в очередь.

        Args:
            channel: ID канала
            text: Текст сообщения
            scheduled_at: Момент отправки, секунды или миллисекунды с эпохи

        Returns:
            ID новой записи
        """
        channel = _require_text(channel, "channel").strip()
        text = _require_text(text, "text")
        ts = normalize_timestamp(scheduled_at)
        if ts is None:
            raise ValidationError(f"scheduled_at must be a finite timestamp, got {scheduled_at!r}")

        message = ScheduledMessage(
            id=generate_message_id(),
            channel=channel,
            text=text,
            scheduled_at=ts,
            status=MessageStatus.PENDING,
        )
        with self.store.locked():
            self.store.append(message)

        MESSAGES_SCHEDULED.inc()
        logger.info(f"⏰ Сообщение {message.id} для {channel} запланировано на {ts}")
        return message.id

    def cancel(self, msg_id: str) -> ScheduledMessage:
        """
        Отменяет ожидающее сообщение.
        Повторная отмена или отмена уже отправленного сообщения ничего не меняет.
        """
        with self.store.locked():
            message = self.store.get(msg_id)
            if message is None:
                raise NotFoundError(f"Scheduled message {msg_id} not found")

            if not message.is_pending:
                logger.info(f"Сообщение {msg_id} уже в статусе {message.to_dict()['status']}, отмена не требуется")
                return message

            self.store.update_status(msg_id, MessageStatus.CANCELLED)
            message.status = MessageStatus.CANCELLED

        MESSAGES_CANCELLED.inc()
        logger.info(f"⏹️ Сообщение {msg_id} отменено")
        return message

    def list(self) -> List[ScheduledMessage]:
        with self.store.locked():
            return self.store.load()

    def get(self, msg_id: str) -> ScheduledMessage:
        message = self.store.get(msg_id)
        if message is None:
            raise NotFoundError(f"Scheduled message {msg_id} not found")
        return message

    async def send_now(self, channel: Any, text: Any) -> DeliveryOutcome:
        """Отправляет сразу, минуя хранилище. Повторов нет."""
        channel = _require_text(channel, "channel").strip()
        text = _require_text(text, "text")

        outcome = await self.gateway.deliver(channel, text)
        if not outcome.delivered:
            logger.error(f"❌ Немедленная отправка в {channel} не удалась: {outcome.error_detail}")
            raise DeliveryError(f"Failed to deliver message to {channel}", outcome=outcome)
        return outcome


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value
