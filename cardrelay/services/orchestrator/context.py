"""Application context: builds and wires every service explicitly, no module singletons."""

from dataclasses import dataclass
from pathlib import Path

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from cardrelay.common.clock import Clock, SystemClock
from cardrelay.common.config import CommonSettings
from cardrelay.common.db import Base, make_engine, make_session_factory
from cardrelay.common.logging import logger
from cardrelay.services.automation.base import PluginLoadError, build_plugin, load_object
from cardrelay.services.automation.session import AutomationSessionPool
from cardrelay.services.email_watcher.imap import ImapMailbox
from cardrelay.services.email_watcher.service import EmailWatcher, Mailbox, MailboxError
from cardrelay.services.ledger.service import LedgerService
from cardrelay.services.notification.service import (
    Channel,
    DiscordChannel,
    LogChannel,
    NotificationService,
    SlackChannel,
)
from cardrelay.services.orchestrator.scheduler import TaskScheduler
from cardrelay.services.orchestrator.service import PURCHASE, REDEMPTION, Orchestrator
from cardrelay.services.secrets.store import SecretStore, SecretStoreError


@dataclass
class AppContext:
    settings: CommonSettings
    clock: Clock
    engine: Engine
    session_factory: sessionmaker
    ledger: LedgerService
    secret_store: SecretStore
    http_client: httpx.AsyncClient
    notifier: NotificationService
    pool: AutomationSessionPool
    watcher: EmailWatcher
    scheduler: TaskScheduler
    orchestrator: Orchestrator

    async def start(self) -> None:
        """Recover interrupted work, then register recurring schedules."""

        await self.orchestrator.recover()
        if self.settings.scheduling_enabled:
            self.orchestrator.register_schedules()
        else:
            logger.info("scheduling_disabled manual triggers only")

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.http_client.aclose()
        self.engine.dispose()
        logger.info("context_closed")


def _ensure_sqlite_dir(dsn: str) -> None:
    prefix = "sqlite:///"
    if dsn.startswith(prefix) and ":memory:" not in dsn:
        Path(dsn[len(prefix) :]).parent.mkdir(parents=True, exist_ok=True)


def _mailbox_login(store: SecretStore):
    def load():
        try:
            bundle = store.get()
        except SecretStoreError as exc:
            raise MailboxError(str(exc)) from exc
        return bundle.mailbox if bundle else None

    return load


PLUGIN_SETTINGS = {PURCHASE: "PURCHASER_PATH", REDEMPTION: "REDEEMER_PATH"}


def _load_plugin(kind: str, path: str | None, errors: dict[str, str], **kwargs):
    try:
        plugin = build_plugin(path, **kwargs)
    except PluginLoadError as exc:
        logger.error("plugin_load_failed kind=%s path=%s error=%s", kind, path, exc)
        errors[kind] = f"{kind} automation unavailable: {exc}"
        return None
    if plugin is None:
        errors[kind] = f"{kind} automation not configured (set {PLUGIN_SETTINGS[kind]})"
    return plugin


def build_channels(settings: CommonSettings, client: httpx.AsyncClient) -> list[Channel]:
    channels: list[Channel] = [LogChannel()]
    if settings.slack_webhook_url:
        channels.append(SlackChannel(client, settings.slack_webhook_url, settings.slack_channel))
    if settings.discord_webhook_url:
        channels.append(DiscordChannel(client, settings.discord_webhook_url))
    return channels


def build_context(
    settings: CommonSettings,
    clock: Clock | None = None,
    *,
    engine: Engine | None = None,
    mailbox: Mailbox | None = None,
    purchaser=None,
    redeemer=None,
    http_client: httpx.AsyncClient | None = None,
) -> AppContext:
    """Construct every service from settings; collaborators can be injected for tests."""

    clock = clock or SystemClock()
    if engine is None:
        _ensure_sqlite_dir(settings.database_dsn)
        engine = make_engine(settings.database_dsn)
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)
    ledger = LedgerService(session_factory)

    master = settings.master_key.get_secret_value() if settings.master_key else None
    secret_store = SecretStore(settings.credentials_path, master, settings.credentials_salt)
    if not secret_store.configured:
        logger.warning("master_key_missing automation will report configuration errors")

    http_client = http_client or httpx.AsyncClient(timeout=settings.network_timeout_seconds)
    notifier = NotificationService(build_channels(settings, http_client), ledger)

    pool = AutomationSessionPool(load_object(settings.session_factory_path)())
    mailbox = mailbox or ImapMailbox(
        settings.imap_host,
        settings.imap_port,
        settings.imap_mailbox,
        settings.email_from_filter,
        _mailbox_login(secret_store),
        timeout=settings.network_timeout_seconds,
    )
    watcher = EmailWatcher(ledger, mailbox, settings, clock)
    scheduler = TaskScheduler(clock, grace_seconds=settings.shutdown_grace_seconds)

    plugin_errors: dict[str, str] = {}
    if purchaser is None:
        purchaser = _load_plugin(
            PURCHASE, settings.purchaser_path, plugin_errors, secret_store=secret_store, settings=settings
        )
    if redeemer is None:
        redeemer = _load_plugin(
            REDEMPTION, settings.redeemer_path, plugin_errors, secret_store=secret_store, settings=settings
        )

    orchestrator = Orchestrator(
        ledger=ledger,
        watcher=watcher,
        pool=pool,
        notifier=notifier,
        scheduler=scheduler,
        settings=settings,
        clock=clock,
        purchaser=purchaser,
        redeemer=redeemer,
        plugin_errors=plugin_errors,
        service_name=settings.service_name,
    )
    return AppContext(
        settings=settings,
        clock=clock,
        engine=engine,
        session_factory=session_factory,
        ledger=ledger,
        secret_store=secret_store,
        http_client=http_client,
        notifier=notifier,
        pool=pool,
        watcher=watcher,
        scheduler=scheduler,
        orchestrator=orchestrator,
    )
