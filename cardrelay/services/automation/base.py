"""Automation boundary: result types, plug-in protocols, and the site script base class.

Concrete purchaser/redeemer scripts live outside this package and are loaded
from `module:attribute` import paths. Expected failures are returned as
`AutomationResult`, never raised.
"""

import asyncio
import importlib
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from cardrelay.common.config import CommonSettings
from cardrelay.common.logging import logger
from cardrelay.services.automation import totp
from cardrelay.services.secrets.store import SecretStore, SecretStoreError, ServiceLogin


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    CAPTCHA = "captcha"
    CONFIGURATION = "configuration"
    # Platform rejected the code itself (already used, expired, invalid); terminal.
    EXPIRED = "expired"


@dataclass(frozen=True)
class AutomationResult:
    success: bool
    external_id: str | None = None
    amount_cents: int | None = None
    error_message: str | None = None
    failure_kind: FailureKind | None = None

    @classmethod
    def ok(cls, external_id: str | None = None, amount_cents: int | None = None) -> "AutomationResult":
        return cls(success=True, external_id=external_id, amount_cents=amount_cents)

    @classmethod
    def failure(cls, error_message: str) -> "AutomationResult":
        return cls(success=False, error_message=error_message, failure_kind=FailureKind.TRANSIENT)

    @classmethod
    def captcha(cls, error_message: str = "manual verification required") -> "AutomationResult":
        return cls(success=False, error_message=error_message, failure_kind=FailureKind.CAPTCHA)

    @classmethod
    def configuration_error(cls, error_message: str) -> "AutomationResult":
        return cls(success=False, error_message=error_message, failure_kind=FailureKind.CONFIGURATION)

    @classmethod
    def expired(cls, error_message: str = "code rejected by platform") -> "AutomationResult":
        return cls(success=False, error_message=error_message, failure_kind=FailureKind.EXPIRED)


class Purchaser(Protocol):
    async def purchase(self, session: Any) -> AutomationResult: ...


class Redeemer(Protocol):
    async def redeem(self, session: Any, code: str) -> AutomationResult: ...


class PluginLoadError(RuntimeError):
    """Configured import path cannot be resolved."""


def load_object(path: str) -> Any:
    """Resolve `package.module:attribute` to the named object."""

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise PluginLoadError(f"expected 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise PluginLoadError(f"cannot import {module_name}: {exc}") from exc
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise PluginLoadError(f"{module_name} has no attribute {attribute}") from exc


def build_plugin(path: str | None, **kwargs) -> Any | None:
    """Instantiate a configured plug-in class, or return None if unconfigured."""

    if not path:
        return None
    factory = load_object(path)
    return factory(**kwargs)


class SiteAutomation:
    """Shared plumbing for concrete site scripts.

    Subclasses set `service` to the credential bundle entry they log in with
    (`retailer` or `platform`).
    """

    service = "retailer"

    def __init__(
        self,
        secret_store: SecretStore,
        settings: CommonSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.secret_store = secret_store
        self.settings = settings
        self._sleep = sleep

    def credentials(self) -> ServiceLogin | None:
        try:
            bundle = self.secret_store.get()
        except SecretStoreError as exc:
            logger.error("credential_lookup_failed service=%s error=%s", self.service, exc)
            return None
        if bundle is None:
            return None
        return getattr(bundle, self.service, None)

    def missing_credentials(self) -> AutomationResult:
        return AutomationResult.configuration_error(f"{self.service} credentials not configured")

    def one_time_code(self, at: datetime | None = None) -> str | None:
        """Current TOTP for this service's seed, or None when 2FA is not set up."""

        login = self.credentials()
        if login is None or login.totp_secret is None:
            return None
        return totp.totp(login.totp_secret.get_secret_value(), at)

    async def await_manual_resolution(
        self,
        check: Callable[[], Awaitable[bool]],
        reason: str = "manual verification required",
        poll_seconds: float = 5.0,
    ) -> AutomationResult | None:
        """Wait for a human to clear a CAPTCHA/2FA prompt.

        Returns None once `check()` reports the blocker is gone; otherwise a
        captcha failure. Unattended runs fail immediately.
        """

        if not self.settings.attended_mode:
            logger.warning("manual_intervention_required service=%s reason=%s", self.service, reason)
            return AutomationResult.captcha(reason)

        waited = 0.0
        timeout = self.settings.manual_intervention_timeout_seconds
        logger.warning("waiting_for_manual_intervention service=%s timeout=%s", self.service, timeout)
        while waited < timeout:
            if await check():
                logger.info("manual_intervention_resolved service=%s waited=%s", self.service, waited)
                return None
            await self._sleep(poll_seconds)
            waited += poll_seconds
        return AutomationResult.captcha(f"{reason} (timed out after {int(timeout)}s)")
