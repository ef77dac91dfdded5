"""Loader for the packaged tax and scheduler defaults."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]


@dataclass(frozen=True)
class WithholdingPreset:
    """A statutory withholding rate with its ATC code."""

    rate: Decimal
    code: str
    label: str


def _to_rate(value: Any, where: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"{where}: invalid rate {value!r}") from exc
    if not (Decimal("0") <= rate < Decimal("1")):
        raise ValueError(f"{where}: rate must be in [0, 1), got {rate}")
    return rate


def parse_withholding_presets(raw: Any) -> list[WithholdingPreset]:
    """Validate a list of preset mappings into ``WithholdingPreset`` objects."""
    if not isinstance(raw, list):
        raise ValueError("withholding_presets must be a list")

    presets: list[WithholdingPreset] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"withholding_presets[{idx}] must be a mapping")
        code = item.get("code")
        if not code:
            raise ValueError(f"withholding_presets[{idx}]: code is required")
        presets.append(
            WithholdingPreset(
                rate=_to_rate(item.get("rate"), f"withholding_presets[{idx}]"),
                code=str(code),
                label=str(item.get("label") or code),
            )
        )
    return presets


@lru_cache
def load_default_settings() -> dict[str, Any]:
    """Load packaged defaults flattened to dotted keys.

    Returns:
        Mapping such as ``{"tax.vatRate": Decimal("0.12"), ...}``.
    """
    path = Path(__file__).resolve().parent / "tax_presets.yaml"
    if not path.exists():
        return {}

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("tax_presets.yaml must be a mapping")

    tax = data.get("tax") or {}
    scheduler = data.get("scheduler") or {}

    return {
        "tax.vatRate": _to_rate(tax.get("vat_rate", "0.12"), "tax.vat_rate"),
        "tax.defaultWithholdingRate": _to_rate(
            tax.get("default_withholding_rate", "0.02"),
            "tax.default_withholding_rate",
        ),
        "tax.defaultWithholdingCode": str(tax.get("default_withholding_code", "WC160")),
        "tax.withholdingPresets": parse_withholding_presets(
            tax.get("withholding_presets", [])
        ),
        "scheduler.enabled": bool(scheduler.get("enabled", True)),
        "scheduler.hour": int(scheduler.get("hour", 8)),
        "scheduler.minute": int(scheduler.get("minute", 0)),
        "scheduler.timezone": str(scheduler.get("timezone", "Asia/Manila")),
    }
