# shared/errors.py

from typing import Optional


class SchedulerError(Exception):
    """Базовая ошибка движка отложенной отправки."""


class ValidationError(SchedulerError):
    """Отсутствует или некорректно обязательное поле запроса."""


class NotFoundError(SchedulerError):
    """Сообщение с указанным ID не найдено."""


class DeliveryError(SchedulerError):
    """Шлюз доставки сообщил о неудаче."""

    def __init__(self, message: str, outcome=None):
        super().__init__(message)
        self.outcome = outcome

    @property
    def detail(self) -> Optional[str]:
        if self.outcome is not None and self.outcome.error_detail:
            return self.outcome.error_detail
        return str(self)


class StorageError(SchedulerError):
    """Хранилище не удалось записать (или прочитать при записи)."""
