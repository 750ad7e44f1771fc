from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tests.conftest import NOW, make_record
from viralforge_entitlements.errors import CatalogValidationError
from viralforge_entitlements.loader import parse_catalog
from viralforge_entitlements.models import Feature, Flag, UsageRecord, UsageStatus
from viralforge_entitlements.resolver import EntitlementsResolver


def _plan(limits, features=None):
    return {"limits": limits, "features": features or {}}


def test_blank_user_id_rejected():
    with pytest.raises(ValueError):
        UsageRecord(user_id="   ", usage_reset_at=NOW)


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2026, 4, 1, 0, 0)
    record = UsageRecord(user_id="u", usage_reset_at=naive, comped_until=naive)
    assert record.usage_reset_at.tzinfo is not None
    assert record.comped_until == naive.replace(tzinfo=NOW.tzinfo)


def test_negative_and_garbage_counters_clamp_to_zero():
    record = make_record(used={"hooks": -4, "abtest": "lots"}, bonus={"hooks": -1})
    assert record.used_for("hooks") == 0
    assert record.used_for("abtest") == 0
    assert record.bonus_for("hooks") == 0


def test_blank_plan_defaults_to_free():
    assert make_record(plan="").plan == "free"


def test_enum_and_string_keys_are_interchangeable(resolver):
    record = make_record(used={Feature.HOOKS: 9})
    assert record.used_for("hooks") == 9
    assert resolver.snapshot_for(record, Feature.HOOKS) == resolver.snapshot_for(record, "hooks")
    assert resolver.catalog.has_feature("creator_pro", Flag.API_ACCESS) is False
    assert resolver.catalog.has_feature("business_pro", Flag.API_ACCESS) is True


def test_unknown_plan_resolves_as_free(resolver):
    snap = resolver.snapshot_for(make_record(plan="enterprise_legacy"), "hooks")
    assert snap.limit == 10


def test_feature_missing_from_catalog_is_blocked(resolver):
    snap = resolver.snapshot_for(make_record(), "teleportation")
    assert snap.effective_limit == 0
    assert snap.status == UsageStatus.BLOCKED
    assert snap.percentage == 1.0


def test_reset_moment_already_passed_reports_zero_days(resolver):
    summary = resolver.summary_for(make_record(reset_in_days=-3))
    assert summary.days_until_reset == 0


def test_reset_just_under_one_day_rounds_up(resolver):
    record = UsageRecord(user_id="u", usage_reset_at=NOW + timedelta(hours=1))
    assert resolver.summary_for(record).days_until_reset == 1


def test_loader_strips_whitespace_from_keys():
    catalog = parse_catalog(
        {"plans": {" free ": _plan({" hooks ": 3}, {" api_access ": False})}},
    )
    assert catalog.is_known_plan("free")
    assert catalog.limit_for("free", "hooks") == 3
    assert catalog.has_feature("free", "api_access") is False


@pytest.mark.parametrize("bad_limit", [True, -1, 2.5, "10", None])
def test_loader_rejects_non_integer_limits(bad_limit):
    with pytest.raises(CatalogValidationError):
        parse_catalog({"plans": {"free": _plan({"hooks": bad_limit})}})


def test_loader_rejects_non_boolean_flags():
    with pytest.raises(CatalogValidationError):
        parse_catalog({"plans": {"free": _plan({"hooks": 1}, {"api_access": "yes"})}})


def test_loader_requires_free_plan():
    with pytest.raises(CatalogValidationError) as exc:
        parse_catalog({"plans": {"pro": _plan({"hooks": 1})}})
    assert exc.value.to_dict()["error"] == "CATALOG_INVALID"


def test_loader_rejects_unknown_plan_in_order():
    with pytest.raises(CatalogValidationError):
        parse_catalog({"plan_order": ["free", "ghost"], "plans": {"free": _plan({"hooks": 1})}})


def test_tier_order_can_be_relaxed():
    raw = {
        "plan_order": ["free", "pro"],
        "plans": {"free": _plan({"hooks": 10}), "pro": _plan({"hooks": 5})},
    }
    with pytest.raises(CatalogValidationError) as exc:
        parse_catalog(raw)
    assert exc.value.violations

    catalog = parse_catalog(raw, enforce_tier_order=False)
    assert catalog.limit_for("pro", "hooks") == 5


def test_summary_accepts_naive_now(resolver):
    naive_now = NOW.replace(tzinfo=None)
    summary = resolver.summary_for(make_record(reset_in_days=20), naive_now)
    assert summary.days_until_reset == 20
    assert summary.to_dict() == resolver.summary_for(make_record(reset_in_days=20), NOW).to_dict()


def test_resolver_with_naive_clock(catalog):
    resolver = EntitlementsResolver(catalog, clock=lambda: NOW.replace(tzinfo=None))
    record = make_record(reset_in_days=5, comped_until=NOW + timedelta(hours=1))
    summary = resolver.summary_for(record)
    assert summary.days_until_reset == 5
    assert summary.is_comped is True
    assert resolver.current_time() == NOW
