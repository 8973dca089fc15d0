"""Environment preparation helpers: packages and the service account."""
from __future__ import annotations

from .packages import PackageError, PackageManager, PackageResult
from .service_accounts import (
    ServiceAccountError,
    ServiceAccountPlan,
    ServiceAccountSpec,
    ServiceAccountStatus,
    apply_service_account_plan,
    ensure_service_account,
    inspect_service_account,
    plan_service_account,
)

__all__ = [
    # package helpers
    "PackageError",
    "PackageManager",
    "PackageResult",
    # service account helpers
    "ServiceAccountError",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "apply_service_account_plan",
    "ensure_service_account",
    "inspect_service_account",
    "plan_service_account",
]
