from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Union

from .catalog import PlanCatalog, find_incomplete_plans, find_tier_order_violations
from .errors import CatalogValidationError
from .models import PlanDefinition

logger = logging.getLogger(__name__)

DEFAULT_PLANS_PATH = Path(__file__).resolve().parent / "plans.json"


class PlanCatalogLoader:
    """Loads the plan catalog from a JSON file with reload support."""

    def __init__(
        self,
        config_path: Union[str, Path, None] = None,
        *,
        enforce_tier_order: bool = True,
    ) -> None:
        self._config_path = Path(config_path) if config_path else DEFAULT_PLANS_PATH
        self._enforce_tier_order = enforce_tier_order
        self._lock = RLock()
        self._catalog: PlanCatalog
        self.reload()

    @property
    def catalog(self) -> PlanCatalog:
        with self._lock:
            return self._catalog

    def reload(self) -> PlanCatalog:
        """Re-read the config file; the previous catalog stays live on failure."""
        raw = self._read_config_file()
        parsed = parse_catalog(raw, enforce_tier_order=self._enforce_tier_order)
        with self._lock:
            self._catalog = parsed
        logger.info(
            "Loaded plan catalog",
            extra={"path": str(self._config_path), "plans": list(parsed.plan_ids())},
        )
        return parsed

    def _read_config_file(self) -> dict:
        with self._config_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise CatalogValidationError(f"{self._config_path.name} must contain a top-level object")
        return raw


def load_plan_catalog(
    config_path: Union[str, Path, None] = None,
    *,
    enforce_tier_order: bool = True,
) -> PlanCatalog:
    return PlanCatalogLoader(config_path, enforce_tier_order=enforce_tier_order).catalog


def _parse_int_mapping(plan_key: str, field_name: str, raw: object) -> Dict[str, int]:
    if not isinstance(raw, dict):
        raise CatalogValidationError(f"plan '{plan_key}' {field_name} must be an object")
    parsed: Dict[str, int] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise CatalogValidationError(f"plan '{plan_key}' has invalid {field_name} key: {key!r}")
        if isinstance(value, bool) or not isinstance(value, int):
            raise CatalogValidationError(
                f"plan '{plan_key}' {field_name}.{key} must be an integer, got {value!r}"
            )
        if value < 0:
            raise CatalogValidationError(f"plan '{plan_key}' {field_name}.{key} must be non-negative")
        parsed[key.strip()] = value
    return parsed


def _parse_flag_mapping(plan_key: str, raw: object) -> Dict[str, bool]:
    if not isinstance(raw, dict):
        raise CatalogValidationError(f"plan '{plan_key}' features must be an object")
    parsed: Dict[str, bool] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise CatalogValidationError(f"plan '{plan_key}' has invalid feature key: {key!r}")
        if not isinstance(value, bool):
            raise CatalogValidationError(f"plan '{plan_key}' features.{key} must be a boolean")
        parsed[key.strip()] = value
    return parsed


def parse_catalog(raw: dict, *, enforce_tier_order: bool = True) -> PlanCatalog:
    plans_raw = raw.get("plans")
    if not isinstance(plans_raw, dict):
        raise CatalogValidationError("plan config must include an object field named 'plans'")

    plans: Dict[str, PlanDefinition] = {}
    for plan_key, plan_data in plans_raw.items():
        if not isinstance(plan_key, str) or not plan_key.strip():
            raise CatalogValidationError("each plan key must be a non-empty string")
        if not isinstance(plan_data, dict):
            raise CatalogValidationError(f"plan '{plan_key}' must be an object")

        name = plan_data.get("name", {})
        if not isinstance(name, dict):
            raise CatalogValidationError(f"plan '{plan_key}' name must be an object of locale -> label")

        price = plan_data.get("price_monthly", 0)
        if isinstance(price, bool) or not isinstance(price, int) or price < 0:
            raise CatalogValidationError(f"plan '{plan_key}' price_monthly must be a non-negative integer")

        plan_id = plan_key.strip()
        plans[plan_id] = PlanDefinition(
            plan_id=plan_id,
            limits=_parse_int_mapping(plan_key, "limits", plan_data.get("limits", {})),
            features=_parse_flag_mapping(plan_key, plan_data.get("features", {})),
            name={str(k): str(v) for k, v in name.items()},
            price_monthly=price,
        )

    if not plans:
        raise CatalogValidationError("plan config must define at least one plan")

    order_raw = raw.get("plan_order", [])
    if not isinstance(order_raw, list) or not all(isinstance(p, str) for p in order_raw):
        raise CatalogValidationError("plan_order must be a list of plan ids")

    try:
        catalog = PlanCatalog(plans=plans, plan_order=tuple(order_raw))
    except ValueError as exc:
        raise CatalogValidationError(str(exc)) from exc

    incomplete: List[str] = find_incomplete_plans(catalog)
    if incomplete:
        raise CatalogValidationError("plan catalog has partial plan records", incomplete)

    if enforce_tier_order:
        violations = find_tier_order_violations(catalog)
        if violations:
            raise CatalogValidationError("plan limits must not decrease across tiers", violations)

    return catalog


_default_catalog: Optional[PlanCatalog] = None


def default_catalog() -> PlanCatalog:
    """The bundled catalog, parsed once per process."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = load_plan_catalog()
    return _default_catalog
