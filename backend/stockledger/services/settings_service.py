# Overview: Per-tenant engine thresholds with application-config defaults.

from __future__ import annotations

import json
from typing import Any, Optional

from ..errors import SettingsValidationError

NEAR_EXPIRY_DAYS = "inventory.near_expiry_days"
RECONCILIATION_TOLERANCE_CENTS = "pos.reconciliation_tolerance_cents"

DEFAULTS = {
    NEAR_EXPIRY_DAYS: 30,
    RECONCILIATION_TOLERANCE_CENTS: 0,
}


def _validate(key: str, value: Any) -> Optional[int]:
    if key not in DEFAULTS:
        raise SettingsValidationError(f"Unknown setting: {key}")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise SettingsValidationError(f"{key} must be an integer")
    if value < 0:
        raise SettingsValidationError(f"{key} must be >= 0")
    return value


class TenantSettings:
    """
    Resolves engine thresholds for a tenant.

    Precedence: TenantSetting row > application config default > built-in default.
    Values are stored JSON-encoded.
    """

    def __init__(self, repos, defaults: Optional[dict] = None):
        self.repos = repos
        self.defaults = dict(DEFAULTS)
        for key, value in (defaults or {}).items():
            self.defaults[key] = _validate(key, value)

    def get(self, tenant_id: int, key: str) -> int:
        if key not in self.defaults:
            raise SettingsValidationError(f"Unknown setting: {key}")
        raw = self.repos.settings.get(tenant_id, key)
        if raw is None:
            return self.defaults[key]
        return json.loads(raw)

    def get_all(self, tenant_id: int) -> dict[str, int]:
        return {key: self.get(tenant_id, key) for key in sorted(self.defaults)}

    def update(self, tenant_id: int, values: dict[str, Any]) -> dict[str, int]:
        """
        Set overrides for a tenant. A None value removes the override.
        Validates every value before writing any.
        """
        cleaned = {
            key: _validate(key, value) for key, value in values.items()
        }

        def _op():
            for key, value in cleaned.items():
                self.repos.settings.set(tenant_id, key, None if value is None else json.dumps(value))

        self.repos.uow.run(_op)
        return self.get_all(tenant_id)

    def near_expiry_days(self, tenant_id: int) -> int:
        return self.get(tenant_id, NEAR_EXPIRY_DAYS)

    def reconciliation_tolerance_cents(self, tenant_id: int) -> int:
        return self.get(tenant_id, RECONCILIATION_TOLERANCE_CENTS)
