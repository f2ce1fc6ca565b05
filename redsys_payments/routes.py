import hmac
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from redsys_payments.config import Settings, get_settings
from redsys_payments.database import get_db
from redsys_payments.errors import ConfigMissing
from redsys_payments.gateway import GatewayClient
from redsys_payments.notifications import NotificationHandler, NotificationResult
from redsys_payments.renewals import RenewalScheduler
from redsys_payments.subscriptions import SubscriptionExpirer

logger = structlog.get_logger()

router = APIRouter(prefix="/payments", tags=["payments"])


def get_gateway_client(settings: Settings = Depends(get_settings)) -> GatewayClient:
    return GatewayClient(settings)


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    secret: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
):
    if not settings.cron_secret:
        logger.error("cron_secret_not_configured")
        raise HTTPException(status_code=500, detail="Server misconfigured")

    provided = secret
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer":
            provided = token.strip()

    if not provided or not hmac.compare_digest(provided.encode(), settings.cron_secret.encode()):
        logger.warning("cron_unauthorized")
        raise HTTPException(status_code=401, detail="Unauthorized")


async def _read_notification_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if "form" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@router.post("/notification")
async def payment_notification(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    # Any non-200 makes the gateway retry, so every failure is acknowledged.
    try:
        body = await _read_notification_body(request)
        result = NotificationHandler(db, settings).handle(body)
    except ConfigMissing:
        logger.critical("notification_config_missing")
        result = NotificationResult("error", "Internal error")
    except Exception:
        db.rollback()
        logger.exception("notification_unhandled_error")
        result = NotificationResult("error", "Internal error")

    return result.to_dict()


@router.api_route("/recurring", methods=["GET", "POST"])
async def run_recurring(
    dry_run: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    _auth=Depends(verify_cron_secret),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    dry = dry_run == "true"
    try:
        run = await RenewalScheduler(db, settings, gateway).run(dry_run=dry, limit=limit)
    except ConfigMissing as e:
        logger.error("renewal_config_missing", error=str(e))
        raise HTTPException(status_code=500, detail="Server misconfigured")

    expired = SubscriptionExpirer(db).expire_canceled(dry_run=dry)

    return {
        "ok": True,
        **run.to_dict(include_results=dry or not settings.is_production),
        "expiredCanceled": expired,
    }
