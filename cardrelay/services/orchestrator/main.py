"""HTTP surface: manual triggers, status, statistics, health and metrics.

The lifespan owns the application context and the scheduler loop; shutdown
stops dispatching, drains in-flight cycles, and disposes the engine.
"""

import asyncio
import hmac
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request

from cardrelay.common.config import CommonSettings
from cardrelay.common.logging import configure_logging, logger
from cardrelay.common.metrics import metrics_response
from cardrelay.common.startup import log_startup_config
from cardrelay.common.tracing import instrument_app, setup_tracing
from cardrelay.services.orchestrator.context import AppContext, build_context
from cardrelay.services.orchestrator.schemas import StatisticsResponse, StatusResponse, TriggerResponse

STARTUP_KEYS = [
    "database_dsn",
    "purchase_cron",
    "timezone",
    "max_retries",
    "email_poll_interval_minutes",
    "redemption_sweep_interval_minutes",
    "purchaser_path",
    "redeemer_path",
    "slack_webhook_url",
    "discord_webhook_url",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the context, recover, and run the scheduler with the app lifecycle."""

    settings = CommonSettings()
    configure_logging(settings.service_name, settings.log_level)
    setup_tracing(settings.service_name, settings.otel_exporter_otlp_endpoint)
    log_startup_config(settings, STARTUP_KEYS)

    context = build_context(settings)
    app.state.context = context
    await context.start()
    scheduler_task = asyncio.create_task(context.scheduler.run_forever())
    try:
        yield
    finally:
        await context.aclose()
        await scheduler_task


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def require_api_key(
    context: AppContext = Depends(get_context), x_api_key: str | None = Header(default=None)
) -> None:
    expected = context.settings.api_key
    if expected is None:
        return
    if x_api_key is None or not hmac.compare_digest(x_api_key, expected.get_secret_value()):
        raise HTTPException(status_code=401, detail="invalid api key")


def create_app() -> FastAPI:
    app = FastAPI(title="cardrelay", lifespan=lifespan)
    instrument_app(app)

    @app.post(
        "/triggers/purchase", status_code=202, response_model=TriggerResponse, dependencies=[Depends(require_api_key)]
    )
    async def trigger_purchase(context: AppContext = Depends(get_context)):
        """Queue a one-shot purchase cycle (cool-down still applies)."""

        queued = context.orchestrator.trigger_purchase()
        logger.info("manual_trigger trigger=purchase queued=%s", queued)
        return TriggerResponse(trigger="purchase", queued=queued)

    @app.post(
        "/triggers/email-check", status_code=202, response_model=TriggerResponse, dependencies=[Depends(require_api_key)]
    )
    async def trigger_email_check(context: AppContext = Depends(get_context)):
        queued = context.orchestrator.trigger_email_check()
        logger.info("manual_trigger trigger=email-check queued=%s", queued)
        return TriggerResponse(trigger="email-check", queued=queued)

    @app.post(
        "/triggers/redemption", status_code=202, response_model=TriggerResponse, dependencies=[Depends(require_api_key)]
    )
    async def trigger_redemption(include_failed: bool = False, context: AppContext = Depends(get_context)):
        """Queue a redemption sweep; `include_failed` also retries failed codes."""

        queued = context.orchestrator.trigger_redemption(include_failed=include_failed)
        logger.info("manual_trigger trigger=redemption include_failed=%s queued=%s", include_failed, queued)
        return TriggerResponse(trigger="redemption", queued=queued)

    @app.get("/status", response_model=StatusResponse, dependencies=[Depends(require_api_key)])
    def status(context: AppContext = Depends(get_context)):
        return context.orchestrator.status()

    @app.get("/statistics", response_model=StatisticsResponse, dependencies=[Depends(require_api_key)])
    def statistics(context: AppContext = Depends(get_context)):
        return context.ledger.get_statistics()

    @app.get("/health")
    def health():
        """Process health probe endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


app = create_app()


def main() -> None:
    settings = CommonSettings()
    uvicorn.run(
        "cardrelay.services.orchestrator.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
