# shared/database.py

import os
import sqlite3
import threading
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from shared.errors import StorageError
from shared.models import MessageStatus, ScheduledMessage
from shared.utils import utc_now_iso

logger = logging.getLogger(__name__)

COLUMNS = ("id", "channel", "text", "scheduled_at", "status", "sent_at", "created_at")

# Столбцы, которых может не быть в базе старой версии
MIGRATED_COLUMNS = {
    "sent_at": "REAL",
    "created_at": "TEXT",
}


class MessageStore:
    """
    Долговременное хранилище запланированных сообщений на SQLite.

    Создаётся один раз при старте процесса и передаётся в менеджер
    сообщений и планировщик. Все операции чтения-изменения-записи
    сериализуются через общий lock (см. locked()).
    """

    def __init__(self, path: str, timeout: float = 20):
        self.path = path
        self.timeout = timeout
        # Глобальный lock для SQLite (на случай многопоточности)
        self._lock = threading.RLock()
        self._initialized = False

    @contextmanager
    def get_db_connection(self) -> Iterator[sqlite3.Connection]:
        """Контекстный менеджер для безопасного подключения к SQLite."""
        with self._lock:
            conn = sqlite3.connect(self.path, check_same_thread=False, timeout=self.timeout)
            conn.row_factory = sqlite3.Row
            conn.execute(f'PRAGMA busy_timeout = {int(self.timeout * 1000)};')
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def locked(self) -> Iterator["MessageStore"]:
        """Эксклюзивный доступ к коллекции на время операции."""
        with self._lock:
            yield self

    def init_db(self):
        """Инициализирует базу данных и создаёт таблицу при необходимости."""
        with self.get_db_connection() as conn:
            conn.execute('PRAGMA journal_mode=WAL;')
            conn.execute('''
                CREATE TABLE IF NOT EXISTS scheduled_messages (
                    id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL,
                    text TEXT NOT NULL,
                    scheduled_at REAL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    sent_at REAL,
                    created_at TEXT
                )
            ''')
            # Миграция: добавляем недостающие столбцы
            existing = {row["name"] for row in conn.execute("PRAGMA table_info(scheduled_messages)")}
            for column, column_type in MIGRATED_COLUMNS.items():
                if column not in existing:
                    conn.execute(f"ALTER TABLE scheduled_messages ADD COLUMN {column} {column_type}")
                    logger.info(f"Миграция: добавлен столбец {column}")
            conn.commit()
        logger.info(f"База данных инициализирована: {self.path}")

    def load(self, strict: bool = False) -> List[ScheduledMessage]:
        """
        Возвращает все записи в порядке добавления.

        Если база отсутствует, заблокирована или повреждена, возвращает пустой
        список. Повреждённый файл переименовывается в *.corrupt, при временных
        ошибках (блокировка, ввод-вывод) файл не трогаем.

        Args:
            strict: Пробрасывать ошибку чтения как StorageError. Нужен перед
                save(), иначе пустой список затрёт сохранённые записи.
        """
        with self._lock:
            try:
                self._ensure_schema()
                with self.get_db_connection() as conn:
                    rows = conn.execute(
                        f"SELECT {', '.join(COLUMNS)} FROM scheduled_messages ORDER BY rowid"
                    ).fetchall()
            except sqlite3.OperationalError as e:
                if strict:
                    raise StorageError(f"Failed to read messages from {self.path}: {e}") from e
                logger.warning(f"⚠️ Хранилище {self.path} временно недоступно ({e}). Продолжаем с пустым состоянием.")
                return []
            except sqlite3.DatabaseError as e:
                if strict:
                    raise StorageError(f"Failed to read messages from {self.path}: {e}") from e
                logger.warning(f"⚠️ Хранилище {self.path} не читается ({e}). Продолжаем с пустым состоянием.")
                self._quarantine()
                return []

        messages = []
        for row in rows:
            try:
                messages.append(ScheduledMessage.from_dict(dict(row)))
            except (KeyError, TypeError) as e:
                logger.warning(f"⚠️ Пропущена нечитаемая запись {dict(row)}: {e}")
        logger.debug(f"Загружено {len(messages)} записей")
        return messages

    def save(self, messages: List[ScheduledMessage]):
        """Заменяет весь набор записей в одной транзакции."""
        with self._lock:
            try:
                self._ensure_schema()
                with self.get_db_connection() as conn:
                    try:
                        conn.execute("DELETE FROM scheduled_messages")
                        conn.executemany(
                            f"INSERT INTO scheduled_messages ({', '.join(COLUMNS)}) "
                            f"VALUES ({', '.join('?' for _ in COLUMNS)})",
                            [_to_row(m) for m in messages],
                        )
                        conn.commit()
                    except Exception:
                        conn.rollback()
                        raise
            except (sqlite3.Error, OSError) as e:
                logger.error(f"❌ Не удалось сохранить {len(messages)} записей в {self.path}: {e}")
                raise StorageError(f"Failed to persist messages to {self.path}: {e}") from e
        logger.debug(f"Сохранено {len(messages)} записей")

    def append(self, message: ScheduledMessage):
        """Добавляет новую запись."""
        if message.created_at is None:
            message.created_at = utc_now_iso()
        with self._lock:
            try:
                self._ensure_schema()
                with self.get_db_connection() as conn:
                    conn.execute(
                        f"INSERT INTO scheduled_messages ({', '.join(COLUMNS)}) "
                        f"VALUES ({', '.join('?' for _ in COLUMNS)})",
                        _to_row(message),
                    )
                    conn.commit()
            except (sqlite3.Error, OSError) as e:
                logger.error(f"❌ Не удалось добавить запись {message.id}: {e}")
                raise StorageError(f"Failed to append message {message.id}: {e}") from e
        logger.info(f"Создана запись ID={message.id}")

    def get(self, msg_id: str) -> Optional[ScheduledMessage]:
        """Возвращает запись по ID."""
        for message in self.load():
            if message.id == msg_id:
                return message
        return None

    def update_status(self, msg_id: str, status: MessageStatus, sent_at: Optional[float] = None) -> bool:
        """
        Переводит запись из pending в новый статус.
        Записи в конечном статусе не изменяются; возвращает False,
        если обновлять было нечего.
        """
        with self._lock:
            try:
                self._ensure_schema()
                with self.get_db_connection() as conn:
                    cursor = conn.execute(
                        "UPDATE scheduled_messages SET status = ?, sent_at = ? WHERE id = ? AND status = ?",
                        (status.value, sent_at, msg_id, MessageStatus.PENDING.value),
                    )
                    conn.commit()
                    updated = cursor.rowcount > 0
            except (sqlite3.Error, OSError) as e:
                logger.error(f"❌ Не удалось обновить статус записи {msg_id}: {e}")
                raise StorageError(f"Failed to update message {msg_id}: {e}") from e
        if updated:
            logger.info(f"Запись ID={msg_id} переведена в статус {status.value}")
        return updated

    def _ensure_schema(self):
        if not self._initialized:
            self.init_db()
            self._initialized = True

    def _quarantine(self):
        self._initialized = False
        if not os.path.exists(self.path):
            return
        bad = f"{self.path}.corrupt"
        try:
            os.replace(self.path, bad)
            logger.warning(f"⚠️ Повреждённая база перемещена в {bad}")
        except OSError as e:
            logger.warning(f"⚠️ Не удалось переместить повреждённую базу {self.path}: {e}")
            return
        # Журналы WAL относятся к старому файлу и не должны попасть в новую базу
        for suffix in ("-wal", "-shm"):
            sidecar = f"{self.path}{suffix}"
            if os.path.exists(sidecar):
                try:
                    os.replace(sidecar, f"{bad}{suffix}")
                except OSError as e:
                    logger.warning(f"⚠️ Не удалось переместить {sidecar}: {e}")


def _to_row(message: ScheduledMessage) -> tuple:
    data = message.to_dict()
    return tuple(data[column] for column in COLUMNS)
