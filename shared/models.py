# shared/models.py

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional, Union


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (MessageStatus.SENT, MessageStatus.CANCELLED)


@dataclass
class ScheduledMessage:
    id: str
    channel: str
    text: str
    scheduled_at: Union[float, str, None]  # секунды UTC; сырое значение у старых записей
    status: Union[MessageStatus, str] = MessageStatus.PENDING
    sent_at: Optional[float] = None
    created_at: Optional[str] = None  # ISO format UTC

    @property
    def is_pending(self) -> bool:
        return self.status == MessageStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = _status_value(self.status)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledMessage":
        """
        Собирает запись из словаря (строки БД или JSON).
        Недостающие вспомогательные поля получают значения по умолчанию,
        неизвестный статус сохраняется как есть и никогда не отправляется.
        """
        return cls(
            id=str(data["id"]),
            channel=data.get("channel") or "",
            text=data.get("text") or "",
            scheduled_at=data.get("scheduled_at"),
            status=parse_status(data.get("status")),
            sent_at=data.get("sent_at"),
            created_at=data.get("created_at"),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    delivered: bool
    error_detail: Optional[str] = None

    @classmethod
    def ok(cls) -> "DeliveryOutcome":
        return cls(delivered=True)

    @classmethod
    def failed(cls, detail: str) -> "DeliveryOutcome":
        return cls(delivered=False, error_detail=detail)


def parse_status(value: Any) -> Union[MessageStatus, str]:
    if value is None or value == "":
        return MessageStatus.PENDING
    try:
        return MessageStatus(value)
    except ValueError:
        return str(value)


def _status_value(status: Union[MessageStatus, str]) -> str:
    return status.value if isinstance(status, MessageStatus) else str(status)
