# config.py

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️ {name}={raw!r} не число. Используется {default}.")
        return default
    if value <= 0:
        logger.warning(f"⚠️ {name}={value} должно быть больше нуля. Используется {default}.")
        return default
    return value


def _list_env(name: str) -> list:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


# Без токена шлюз доставки работает в stub-режиме
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()

DATABASE_PATH = os.getenv("DATABASE_PATH", "scheduled_messages.db")

# Период проверки просроченных сообщений (сек)
SWEEP_INTERVAL_SECONDS = _int_env("SWEEP_INTERVAL_SECONDS", 60)

# Максимальное время одного вызова внешнего API (сек)
DELIVERY_TIMEOUT_SECONDS = _int_env("DELIVERY_TIMEOUT_SECONDS", 30)

WEB_API_SECRET = os.getenv("WEB_API_SECRET", "").strip()

KNOWN_CHANNELS = _list_env("KNOWN_CHANNELS")

TIMEZONE = os.getenv("TIMEZONE", "UTC")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

PORT = _int_env("PORT", 8081)
