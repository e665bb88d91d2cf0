"""Normalise a ``getUsageLimits`` response into a ``UsageReport``."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pool_gateway.shared.providers.types import QuotaInfo, UsageReport


def _epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(float(value), timezone.utc)


def _iso(value: Any) -> str | None:
    moment = _epoch(value)
    return moment.isoformat() if moment else None


def _precise(data: dict[str, Any], key: str) -> float:
    value = data.get(f"{key}WithPrecision")
    if value is None:
        value = data.get(key)
    return float(value or 0)


def _breakdown_item(raw: dict[str, Any]) -> dict[str, Any]:
    item: dict[str, Any] = {
        "resourceType": raw.get("resourceType"),
        "displayName": raw.get("displayName"),
        "unit": raw.get("unit"),
        "currentUsage": _precise(raw, "currentUsage"),
        "usageLimit": _precise(raw, "usageLimit"),
        "nextDateReset": _iso(raw.get("nextDateReset")),
        "freeTrial": None,
        "bonuses": [],
    }
    trial = raw.get("freeTrialInfo")
    if trial:
        item["freeTrial"] = {
            "status": trial.get("freeTrialStatus"),
            "currentUsage": _precise(trial, "currentUsage"),
            "usageLimit": _precise(trial, "usageLimit"),
            "expiresAt": _iso(trial.get("freeTrialExpiry")),
        }
    for bonus in raw.get("bonuses") or []:
        item["bonuses"].append(
            {
                "code": bonus.get("bonusCode"),
                "displayName": bonus.get("displayName"),
                "status": bonus.get("status"),
                "currentUsage": float(bonus.get("currentUsage") or 0),
                "usageLimit": float(bonus.get("usageLimit") or 0),
                "expiresAt": _iso(bonus.get("expiresAt")),
            }
        )
    return item


def format_usage(data: dict[str, Any]) -> UsageReport:
    """Totals sum every breakdown bucket plus any free-trial allowance."""
    breakdown = [_breakdown_item(raw) for raw in data.get("usageBreakdownList") or []]

    used = 0.0
    total = 0.0
    for item in breakdown:
        used += item["currentUsage"]
        total += item["usageLimit"]
        if item["freeTrial"]:
            used += item["freeTrial"]["currentUsage"]
            total += item["freeTrial"]["usageLimit"]

    unit = (breakdown[0].get("unit") if breakdown else None) or "INVOCATIONS"
    quota = QuotaInfo.from_totals(
        used,
        total,
        unit=unit,
        breakdown=breakdown,
        next_reset_at=_epoch(data.get("nextDateReset")),
    )
    subscription = (data.get("subscriptionInfo") or {}).get("subscriptionTitle")
    email = (data.get("userInfo") or {}).get("email")
    return UsageReport(quota=quota, email=email, subscription=subscription)
