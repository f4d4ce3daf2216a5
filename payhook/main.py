import json
import logging
from datetime import datetime
from typing import Callable

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from payhook.config import Settings, configure_logging
from payhook.database import get_db, make_engine, make_session_factory
from payhook.intake import IntakeOutcome, WebhookIntakeHandler
from payhook.models import Base, utc_now
from payhook.plans import PlanCatalog, StaticPlanCatalog
from payhook.signature import SignatureVerifier

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 1024 * 1024  # 1 MB limit


def create_app(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    plan_catalog: PlanCatalog | None = None,
    verifier: SignatureVerifier | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.LOG_LEVEL)
    if not settings.WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET is empty; every notification will be rejected")

    db_engine = engine or make_engine(settings.DATABASE_URL)
    Base.metadata.create_all(db_engine)

    application = FastAPI(title=settings.PROJECT_NAME)
    application.state.session_factory = make_session_factory(db_engine)
    application.state.signature_header = settings.SIGNATURE_HEADER
    application.state.intake = WebhookIntakeHandler(
        secret=settings.WEBHOOK_SECRET,
        plan_catalog=plan_catalog or StaticPlanCatalog.from_days(settings.PLAN_DURATIONS_DAYS),
        verifier=verifier,
        clock=clock,
    )

    @application.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @application.post("/webhooks/payments")
    async def receive_webhook(
        request: Request,
        db: Session = Depends(get_db),
    ) -> Response:
        # Raw bytes are kept as received; the signature covers them, not a re-encoding
        body = await request.body()
        if len(body) > MAX_BODY_SIZE:
            logger.warning("Webhook rejected: body of %d bytes exceeds limit", len(body))
            return _respond(IntakeOutcome.REJECTED)

        try:
            document = json.loads(body) if body else None
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError, ValueError):
            document = None

        signature = request.headers.get(request.app.state.signature_header)
        result = await run_in_threadpool(
            request.app.state.intake.handle, db, body, signature, document,
        )
        return _respond(result.outcome, duplicate=result.duplicate)

    return application


def _respond(outcome: IntakeOutcome, duplicate: bool = False) -> JSONResponse:
    content: dict = {"status": outcome.value}
    if duplicate:
        content["duplicate"] = True
    return JSONResponse(status_code=outcome.http_status, content=content)
