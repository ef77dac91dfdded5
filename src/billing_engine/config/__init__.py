"""Configuration module for the billing engine."""

from billing_engine.config.logging import bound_run_context, configure_logging, get_logger
from billing_engine.config.settings import BillingSettings, get_settings
from billing_engine.config.tax_presets import WithholdingPreset, load_default_settings

__all__ = [
    "BillingSettings",
    "WithholdingPreset",
    "bound_run_context",
    "configure_logging",
    "get_logger",
    "get_settings",
    "load_default_settings",
]
