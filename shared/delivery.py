# shared/delivery.py

import asyncio
import datetime
import logging
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

from telegram import Bot
from telegram.error import BadRequest, Forbidden, InvalidToken, NetworkError, TelegramError, TimedOut

from shared.models import DeliveryOutcome

logger = logging.getLogger(__name__)

# Показывается, когда список каналов получить не удалось
FALLBACK_CHANNELS = [
    {"id": "C123", "name": "general"},
    {"id": "C234", "name": "random"},
    {"id": "C345", "name": "engineering"},
]

CHANNEL_TITLE_TTL_SECONDS = 3600


class DeliveryGateway(Protocol):
    """Шлюз доставки: (channel, text) -> DeliveryOutcome."""

    async def deliver(self, channel: str, text: str) -> DeliveryOutcome:
        """
        Отправляет текст в канал. Отказ API и сетевые ошибки возвращаются
        как delivered=False, исключение не пробрасывается.
        """
        ...

    async def list_channels(self) -> List[Dict[str, str]]:
        ...


class StubDeliveryGateway:
    """Режим без учётных данных: ничего не отправляет, всегда успех."""

    def __init__(self, channels: Sequence[str] = ()):
        self.channels = list(channels)

    async def deliver(self, channel: str, text: str) -> DeliveryOutcome:
        logger.info(f"🧪 (stub) Отправка в {channel}: {text!r}")
        return DeliveryOutcome.ok()

    async def list_channels(self) -> List[Dict[str, str]]:
        if self.channels:
            return [{"id": c, "name": c} for c in self.channels]
        return list(FALLBACK_CHANNELS)


class TelegramDeliveryGateway:
    """Доставка через Telegram Bot API (python-telegram-bot)."""

    def __init__(
        self,
        token: str,
        timeout: float = 30,
        channels: Sequence[str] = (),
        bot: Optional[Bot] = None,
    ):
        self.timeout = timeout
        self.channels = list(channels)
        self._bot = bot or Bot(token=token)
        # Кэш названий каналов: id -> (название, время получения)
        self._title_cache: Dict[str, Tuple[str, datetime.datetime]] = {}

    async def deliver(self, channel: str, text: str) -> DeliveryOutcome:
        logger.info(f"📤 Отправка сообщения в канал {channel}")
        try:
            message = await asyncio.wait_for(
                self._bot.send_message(chat_id=_chat_id(channel), text=text),
                timeout=self.timeout,
            )
        except (BadRequest, Forbidden) as e:
            logger.error(f"❌ API отклонил отправку в {channel}: {e}")
            return DeliveryOutcome.failed(f"rejected: {e}")
        except asyncio.TimeoutError:
            logger.error(f"❌ Таймаут {self.timeout} сек при отправке в {channel}")
            return DeliveryOutcome.failed(f"timeout after {self.timeout}s")
        except (InvalidToken, TimedOut, NetworkError) as e:
            logger.error(f"❌ Транспортная ошибка при отправке в {channel}: {e}")
            return DeliveryOutcome.failed(f"transport: {e}")
        except TelegramError as e:
            logger.error(f"❌ Ошибка Telegram API при отправке: {e}")
            return DeliveryOutcome.failed(str(e))

        logger.info(f"✅ Сообщение отправлено в {channel}, ID: {message.message_id}")
        return DeliveryOutcome.ok()

    async def list_channels(self) -> List[Dict[str, str]]:
        """Названия известных каналов через API, с кэшированием на час."""
        if not self.channels:
            return list(FALLBACK_CHANNELS)
        return [
            {"id": channel, "name": await self._channel_title(channel)}
            for channel in self.channels
        ]

    async def _channel_title(self, channel: str) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        if channel in self._title_cache:
            title, timestamp = self._title_cache[channel]
            if (now - timestamp).total_seconds() < CHANNEL_TITLE_TTL_SECONDS:
                return title

        try:
            chat = await asyncio.wait_for(self._bot.get_chat(_chat_id(channel)), timeout=self.timeout)
            title = chat.title or chat.username or channel
        except (TelegramError, asyncio.TimeoutError) as e:
            logger.warning(f"Не удалось получить название канала {channel}: {e}")
            title = channel

        self._title_cache[channel] = (title, now)
        return title


def build_gateway(token: Optional[str], timeout: float = 30, channels: Sequence[str] = ()) -> DeliveryGateway:
    """Без токена работаем в stub-режиме."""
    if not token:
        logger.warning("⚠️ BOT_TOKEN не задан: шлюз доставки работает в stub-режиме")
        return StubDeliveryGateway(channels=channels)
    return TelegramDeliveryGateway(token=token, timeout=timeout, channels=channels)


def _chat_id(channel: str) -> Union[int, str]:
    # Числовые ID чатов передаём как int, @username как есть
    stripped = channel.strip()
    if stripped.lstrip("-").isdigit():
        return int(stripped)
    return stripped
