"""Runtime settings served through a read-through TTL cache.

Runtime settings are key-value pairs such as ``tax.vatRate`` or
``scheduler.hour``. They come from a pluggable source (typically a settings
table) layered over the packaged YAML defaults.
"""

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import structlog
from cachetools import TTLCache

from billing_engine.config.settings import BillingSettings, get_settings
from billing_engine.config.tax_presets import (
    WithholdingPreset,
    load_default_settings,
    parse_withholding_presets,
)
from billing_engine.tax import validate_rate

logger = structlog.get_logger(__name__)

SettingsSource = Callable[[], Mapping[str, Any]]

_CACHE_KEY = "settings"

_ENV_FIELDS = {
    "tax.vatRate": "vat_rate",
    "tax.defaultWithholdingRate": "default_withholding_rate",
    "tax.defaultWithholdingCode": "default_withholding_code",
    "scheduler.enabled": "scheduler_enabled",
    "scheduler.hour": "scheduler_hour",
    "scheduler.minute": "scheduler_minute",
    "scheduler.timezone": "scheduler_timezone",
}


@dataclass(frozen=True)
class SchedulerCadence:
    """When the daily billing sweep runs."""

    enabled: bool
    hour: int
    minute: int
    timezone: str


def _env_defaults(settings: BillingSettings, explicit_only: bool = False) -> dict[str, Any]:
    values = {
        "tax.vatRate": Decimal(str(settings.vat_rate)),
        "tax.defaultWithholdingRate": Decimal(str(settings.default_withholding_rate)),
        "tax.defaultWithholdingCode": settings.default_withholding_code,
        "scheduler.enabled": settings.scheduler_enabled,
        "scheduler.hour": settings.scheduler_hour,
        "scheduler.minute": settings.scheduler_minute,
        "scheduler.timezone": settings.scheduler_timezone,
    }
    if not explicit_only:
        return values
    return {key: value for key, value in values.items() if _ENV_FIELDS[key] in settings.model_fields_set}


class SettingsProvider:
    """Read-only settings with a time-based cache.

    Lookups read through to the source at most once per TTL window.
    ``invalidate()`` drops the cache so the next lookup reloads. If the
    source fails, the failure is logged and the defaults are served.

    Args:
        source: Returns the current key-value overrides. None means
            defaults only.
        ttl_seconds: Cache lifetime. Defaults to settings.
        clock: Monotonic clock in seconds used as the cache timer.
    """

    def __init__(
        self,
        source: SettingsSource | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        settings: BillingSettings | None = None,
    ):
        settings = settings or get_settings()
        self._source = source
        self._ttl = settings.settings_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        # Packaged YAML beats field defaults; explicitly set environment wins.
        self._defaults = {
            **_env_defaults(settings),
            **load_default_settings(),
            **_env_defaults(settings, explicit_only=True),
        }
        self._settings = settings

        self._lock = threading.Lock()
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=self._ttl, timer=clock)

        self._logger = logger.bind(component="settings_provider")

    def invalidate(self) -> None:
        """Drop cached values; the next lookup reloads from the source."""
        with self._lock:
            self._cache.clear()
        self._logger.debug("settings_cache_invalidated")

    def _load(self) -> dict[str, Any]:
        merged = dict(self._defaults)
        if self._source is None:
            return merged
        try:
            overrides = dict(self._source())
        except Exception as e:
            self._logger.error("settings_source_failed", error=str(e))
            return merged
        merged.update(overrides)
        return merged

    def _values(self) -> dict[str, Any]:
        with self._lock:
            values = self._cache.get(_CACHE_KEY)
            if values is None:
                values = self._load()
                self._cache[_CACHE_KEY] = values
                self._logger.debug("settings_cache_refreshed", keys=len(values))
            return values

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw setting value."""
        return self._values().get(key, default)

    def vat_rate(self) -> Decimal:
        """VAT fraction used for new invoices."""
        return validate_rate(self.get("tax.vatRate"), "tax.vatRate")

    def withholding_presets(self) -> list[WithholdingPreset]:
        raw = self.get("tax.withholdingPresets", [])
        if raw and not isinstance(raw[0], WithholdingPreset):
            return parse_withholding_presets(raw)
        return list(raw)

    def default_withholding(self) -> WithholdingPreset:
        """Withholding rate and code applied when a schedule names none."""
        rate = validate_rate(self.get("tax.defaultWithholdingRate"), "tax.defaultWithholdingRate")
        code = str(self.get("tax.defaultWithholdingCode"))
        for preset in self.withholding_presets():
            if preset.code == code:
                return WithholdingPreset(rate=rate, code=code, label=preset.label)
        return WithholdingPreset(rate=rate, code=code, label=code)

    def invoice_prefix(self) -> str:
        return str(self.get("billing.defaultInvoicePrefix", self._settings.default_invoice_prefix))

    def scheduler_cadence(self) -> SchedulerCadence:
        return SchedulerCadence(
            enabled=bool(self.get("scheduler.enabled")),
            hour=int(self.get("scheduler.hour")),
            minute=int(self.get("scheduler.minute")),
            timezone=str(self.get("scheduler.timezone")),
        )
