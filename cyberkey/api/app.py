"""
HTTP endpoints.

Callable surfaces for the scan trigger, SMTP test, balance checks, push
dispatch and activity recording. Domain errors are mapped to status codes
by one exception handler; anything unexpected becomes a generic 500.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from cyberkey.config.loader import AppConfig, load_config
from cyberkey.core.errors import CyberKeyError, EmailDeliveryError
from cyberkey.core.services import Services, build_services
from cyberkey.notifications.email import send_test_email
from cyberkey.notifications.push import Notification
from cyberkey.storage.models import ActivityType, SmtpSettings

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SmtpTestRequest(_CamelModel):
    settings: Optional[Dict[str, Any]] = None
    to: Optional[str] = None


class BalanceRequest(_CamelModel):
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")


class NotificationBody(_CamelModel):
    title: str
    body: str
    data: Dict[str, str] = Field(default_factory=dict)


class SendNotificationRequest(_CamelModel):
    user_id: str = Field(alias="userId")
    notification: NotificationBody


class RecordActivityRequest(_CamelModel):
    user_id: str = Field(alias="userId")
    type: ActivityType
    details: Optional[Dict[str, Any]] = None


async def cyberkey_error_handler(request: Request, exc: CyberKeyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.safe_message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()})
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid request: {', '.join(fields) or 'body'}"},
    )


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Application configuration (loaded from the environment if omitted)
        services: Prebuilt services, mostly for tests

    Returns:
        Configured FastAPI app
    """
    if services is None:
        services = build_services(config or load_config())

    app = FastAPI(title="CyberKey", description="API key expiry and activity monitoring")
    app.state.services = services

    app.add_exception_handler(CyberKeyError, cyberkey_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.post("/api/check-expiring-keys")
    def check_expiring_keys():
        result = services.expiring_key_scanner("smtp").scan()
        if result.error:
            return JSONResponse(status_code=500, content={"error": "Internal server error"})
        return {
            "success": True,
            "keysFound": result.keys_found,
            "notified": result.notified,
            "skipped": result.skipped,
            "failed": result.failed,
        }

    @app.post("/api/test-smtp")
    def test_smtp(request: SmtpTestRequest):
        if not request.settings or not request.to:
            return JSONResponse(status_code=400, content={"error": "Missing required parameters"})
        try:
            settings = SmtpSettings.from_dict(request.settings)
        except (TypeError, ValueError) as e:
            return JSONResponse(status_code=400, content={"error": str(e)})

        try:
            send_test_email(settings, request.to)
        except EmailDeliveryError as e:
            return JSONResponse(status_code=500, content={"error": str(e)})
        return {"success": True}

    @app.post("/api/balance")
    async def check_balance(request: BalanceRequest):
        response = await services.balance.check_balance(request.api_key, request.organization_id)
        return JSONResponse(status_code=response.http_status, content=response.to_dict())

    @app.post("/api/anthropic/balance")
    async def anthropic_balance(request: BalanceRequest):
        response = await services.balance.available_credit(request.api_key)
        return JSONResponse(status_code=response.http_status, content=response.to_dict())

    @app.post("/api/notifications/send")
    def send_notification(request: SendNotificationRequest):
        try:
            notification = Notification(
                title=request.notification.title,
                body=request.notification.body,
                data=request.notification.data,
            )
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        return services.dispatcher.dispatch(request.user_id, notification).to_dict()

    @app.post("/api/activity", status_code=201)
    def record_activity(payload: RecordActivityRequest, request: Request):
        recorded = services.recorder.record(
            payload.user_id,
            payload.type,
            details=payload.details,
            headers=dict(request.headers),
            user_agent=request.headers.get("user-agent"),
        )
        return {
            "id": recorded.log.id,
            "ipAddress": recorded.log.ip_address,
            "alertsCreated": [alert.id for alert in recorded.alerting.alerts_created],
        }

    return app
