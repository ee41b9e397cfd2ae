# scheduler_logic.py
import asyncio
import logging
import datetime
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import pytz
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shared.database import MessageStore
from shared.delivery import DeliveryGateway
from shared.errors import StorageError
from shared.metrics import DELIVERY_FAILURES, MESSAGES_SENT, PENDING_MESSAGES, SWEEPS_RUN
from shared.models import DeliveryOutcome, MessageStatus, ScheduledMessage
from shared.utils import normalize_timestamp, ts_to_iso, utc_now_ts

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "due_sweep"


@dataclass
class SweepReport:
    now: float
    due: int = 0
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def select_due(messages: List[ScheduledMessage], now: float) -> Tuple[List[ScheduledMessage], List[str]]:
    """
    Отбирает ожидающие сообщения, время которых наступило.

    Returns:
        (кандидаты на отправку, ID пропущенных записей с некорректным временем)
    """
    due = []
    skipped = []
    for message in messages:
        if not message.is_pending:
            continue
        scheduled_at = normalize_timestamp(message.scheduled_at)
        if scheduled_at is None:
            logger.warning(f"⚠️ Пропускаем сообщение {message.id}: некорректное время {message.scheduled_at!r}")
            skipped.append(message.id)
            continue
        if scheduled_at <= now:
            due.append(message)
    return due, skipped


async def run_sweep(store: MessageStore, gateway: DeliveryGateway, now: Optional[float] = None) -> SweepReport:
    """
    Один цикл проверки: отправляет все просроченные pending-сообщения.

    Неудачная отправка оставляет сообщение в pending до следующего цикла.
    Результаты сохраняются одной записью в конце цикла; ошибка записи
    хранилища пробрасывается.
    """
    messages = store.load()
    # Одно чтение часов на весь цикл
    now = utc_now_ts() if now is None else now
    candidates, skipped = select_due(messages, now)
    report = SweepReport(now=now, due=len(candidates), skipped=skipped)
    logger.debug(f"🔄 Проверка очереди: {len(messages)} записей, к отправке {len(candidates)}")

    for message in candidates:
        try:
            outcome = await gateway.deliver(message.channel, message.text)
        except Exception as e:
            logger.exception(f"❌ Неожиданная ошибка при отправке сообщения {message.id}: {e}")
            outcome = DeliveryOutcome.failed(str(e))

        if outcome.delivered:
            report.sent.append(message.id)
        else:
            DELIVERY_FAILURES.inc()
            report.failed.append(message.id)
            logger.error(
                f"❌ Сообщение {message.id} для {message.channel} не доставлено: "
                f"{outcome.error_detail}. Повтор в следующем цикле."
            )

    if report.sent:
        # SQLite и lock блокируют поток: пишем вне event loop
        await asyncio.to_thread(_persist_sent, store, report.sent, now)

    SWEEPS_RUN.inc()
    if candidates or skipped:
        logger.info(
            f"✅ Цикл завершён: к отправке {report.due}, отправлено {len(report.sent)}, "
            f"ошибок {len(report.failed)}, пропущено {len(report.skipped)}"
        )
    return report


def _persist_sent(store: MessageStore, sent_ids: List[str], now: float):
    # Перечитываем состояние под lock: отмена во время цикла не теряется
    sent = set(sent_ids)
    with store.locked():
        # Без strict временная ошибка чтения дала бы save([]) и потерю всех записей
        current = store.load(strict=True)
        for message in current:
            if message.id not in sent:
                continue
            if message.is_pending:
                message.status = MessageStatus.SENT
                message.sent_at = now
                MESSAGES_SENT.inc()
            else:
                logger.warning(
                    f"⚠️ Сообщение {message.id} доставлено, но уже в статусе "
                    f"{message.to_dict()['status']}. Статус не меняем."
                )
        missing = sent - {m.id for m in current}
        if missing:
            logger.warning(f"⚠️ Доставленные сообщения не найдены в хранилище: {sorted(missing)}")
        store.save(current)


class DueSweepScheduler:
    """
    Периодический запуск run_sweep через APScheduler.

    Первый цикл выполняется сразу при start(), чтобы сообщения,
    просроченные за время простоя, не ждали целый интервал.
    В тестах вызывайте run_once() напрямую.
    """

    def __init__(
        self,
        store: MessageStore,
        gateway: DeliveryGateway,
        interval_seconds: int = 60,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.interval_seconds = interval_seconds
        self._scheduler = scheduler
        self._job: Optional[Job] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._job is not None and self._scheduler is not None and self._scheduler.running

    async def run_once(self, now: Optional[float] = None) -> SweepReport:
        report = await run_sweep(self.store, self.gateway, now=now)
        self.last_report = report
        return report

    async def _tick(self):
        try:
            await self.run_once()
        except StorageError as e:
            # Доставка могла пройти, а статус не сохранён: возможен повтор
            logger.critical(f"🚨 Не удалось сохранить результаты цикла: {e}. Возможна повторная отправка.")
        except Exception as e:
            logger.exception(f"❌ Ошибка цикла планировщика: {e}")

    def start(self) -> Job:
        """Регистрирует периодическую задачу и запускает планировщик (нужен работающий event loop)."""
        if self._job is not None:
            return self._job
        if self._scheduler is None:
            # AsyncIOScheduler привязывается к текущему event loop
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._job = self._scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds, timezone=pytz.UTC),
            id=SWEEP_JOB_ID,
            next_run_time=datetime.datetime.now(pytz.UTC),
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"🚀 Планировщик запущен (проверка каждые {self.interval_seconds} сек)")
        return self._job

    def stop(self):
        """Снимает периодическую задачу; планировщик продолжает работать."""
        if self._job is not None:
            self._job.remove()
            self._job = None
            logger.info("⏹️ Периодическая проверка остановлена")

    def shutdown(self):
        self.stop()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)


def health_check(store: MessageStore, now: Optional[float] = None, timezone: str = "UTC") -> dict:
    """
    Проверяет состояние очереди.

    Returns:
        Словарь со статистикой по статусам и ближайшими сообщениями
    """
    try:
        messages = store.load()
        now = utc_now_ts() if now is None else now
        local_tz = pytz.timezone(timezone)

        status_stats = {status.value: 0 for status in MessageStatus}
        for message in messages:
            key = message.to_dict()["status"]
            status_stats[key] = status_stats.get(key, 0) + 1

        pending = [
            (normalize_timestamp(m.scheduled_at), m)
            for m in messages
            if m.is_pending and normalize_timestamp(m.scheduled_at) is not None
        ]
        PENDING_MESSAGES.set(status_stats[MessageStatus.PENDING.value])

        return {
            "status": "ok",
            "total_count": len(messages),
            "status_stats": status_stats,
            "overdue_count": sum(1 for ts, _ in pending if ts <= now),
            "next_messages": [
                {
                    "id": m.id,
                    "channel": m.channel,
                    "scheduled_at": ts,
                    "scheduled_at_local": ts_to_iso(ts, local_tz),
                }
                for ts, m in sorted(pending, key=lambda item: item[0])[:5]
            ],
        }
    except Exception as e:
        logger.error(f"❌ Ошибка проверки здоровья планировщика: {e}")
        return {
            "status": "error",
            "error": str(e),
        }
