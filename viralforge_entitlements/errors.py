"""
Entitlement error hierarchy.

Provides:
- EntitlementError: base for all entitlement failures
- CatalogValidationError: plan configuration is malformed or inconsistent
- UsageStoreError: usage store failure (StoreReadError / StorePersistenceError)
- UnknownFeatureError: feature key not present in the plan catalog
"""

from typing import List, Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class CatalogValidationError(EntitlementError, ValueError):
    """Raised when a plan catalog fails validation at load time."""

    error_code = "CATALOG_INVALID"

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        self.violations = list(violations or [])
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.violations:
            d["violations"] = list(self.violations)
        return d


class UnknownFeatureError(EntitlementError, KeyError):
    """Raised when a feature key is not defined by the plan catalog."""

    error_code = "UNKNOWN_FEATURE"

    def __init__(self, feature_key: str):
        self.feature_key = feature_key
        super().__init__(f"Unknown feature: {feature_key!r}")

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "feature_key": self.feature_key,
            "message": self.message,
        }


class UsageStoreError(EntitlementError):
    """Base for failures talking to the usage store."""

    error_code = "USAGE_STORE_ERROR"

    def __init__(
        self,
        user_id: str,
        detail: str,
        cause: Optional[Exception] = None,
    ):
        self.user_id = user_id
        self.detail = detail
        self.cause = cause
        super().__init__(f"Usage store failure for {user_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "user_id": self.user_id,
        }


class StoreReadError(UsageStoreError):
    """Raised when a usage record could not be fetched."""

    error_code = "USAGE_STORE_READ_FAILED"


class StorePersistenceError(UsageStoreError):
    """Raised when a usage increment or reset could not be written."""

    error_code = "USAGE_STORE_WRITE_FAILED"
