# web_api.py

import datetime
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

import config
from message_service import MessageService
from scheduler_logic import DueSweepScheduler, health_check
from shared.database import MessageStore
from shared.delivery import DeliveryGateway, build_gateway
from shared.errors import DeliveryError, NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)


# === Модели данных ===
# Поля необязательные: проверку делает MessageService (ответ 400, а не 422)
class SendRequest(BaseModel):
    channel: Optional[str] = None
    text: Optional[str] = None


class ScheduleRequest(BaseModel):
    channel: Optional[str] = None
    text: Optional[str] = None
    # Без приведения типов: true не должен превращаться в 1.0
    scheduled_at: Any = None


def create_app(
    store: Optional[MessageStore] = None,
    gateway: Optional[DeliveryGateway] = None,
    start_scheduler: bool = True,
    secret: Optional[str] = None,
) -> FastAPI:
    """Собирает приложение: одно хранилище и один шлюз на процесс."""
    store = store or MessageStore(config.DATABASE_PATH)
    gateway = gateway or build_gateway(
        config.BOT_TOKEN,
        timeout=config.DELIVERY_TIMEOUT_SECONDS,
        channels=config.KNOWN_CHANNELS,
    )
    secret = config.WEB_API_SECRET if secret is None else secret
    service = MessageService(store, gateway)
    sweeper = DueSweepScheduler(store, gateway, interval_seconds=config.SWEEP_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.init_db()
        if start_scheduler:
            sweeper.start()
        yield
        if start_scheduler:
            sweeper.shutdown()

    app = FastAPI(title="Channel Message Scheduler API", lifespan=lifespan)
    app.state.service = service
    app.state.sweeper = sweeper

    def check_secret(x_secret: Optional[str]):
        if secret and x_secret != secret:
            raise HTTPException(status_code=403, detail="Invalid secret")

    # === Эндпоинты ===

    @app.get("/health", summary="Health check")
    def health():
        return {
            "status": "ok",
            "scheduler_running": sweeper.running,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    @app.get("/metrics", summary="Prometheus metrics")
    def metrics():
        # Обновляет gauge ожидающих сообщений
        health_check(store)
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/api/send", summary="Send message immediately")
    async def send_now(request: SendRequest, x_secret: Optional[str] = Header(None)):
        check_secret(x_secret)
        try:
            outcome = await service.send_now(request.channel, request.text)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except DeliveryError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.detail)
        logger.info(f"Web send: channel={request.channel}")
        return {"ok": True, "delivered": outcome.delivered}

    @app.post("/api/schedule", summary="Schedule message")
    def schedule(request: ScheduleRequest, x_secret: Optional[str] = Header(None)):
        check_secret(x_secret)
        try:
            msg_id = service.schedule(request.channel, request.text, request.scheduled_at)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StorageError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "id": msg_id}

    @app.get("/api/scheduled", summary="List scheduled messages")
    def list_scheduled():
        return [m.to_dict() for m in service.list()]

    @app.delete("/api/scheduled/{msg_id}", summary="Cancel scheduled message")
    def cancel(msg_id: str, x_secret: Optional[str] = Header(None)):
        check_secret(x_secret)
        try:
            message = service.cancel(msg_id)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StorageError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"ok": True, "status": message.to_dict()["status"]}

    @app.get("/api/channels", summary="List known channels")
    async def channels():
        return await gateway.list_channels()

    @app.get("/api/scheduler/health", summary="Scheduler queue health")
    def scheduler_health():
        result = health_check(store, timezone=config.TIMEZONE)
        if result["status"] != "ok":
            return JSONResponse(result, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return result

    return app


# === Запуск сервера ===
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.info(f"🚀 Запуск веб-API на порту {config.PORT}...")
    uvicorn.run(create_app(), host="0.0.0.0", port=config.PORT)
