"""Tests for the lifecycle classifier."""

import itertools
from datetime import timedelta

import pytest

from retailvis.entitlements.lifecycle import classify_lifecycle, classify_tenant, lapsed_at
from retailvis.entitlements.models import LifecycleState, SubscriptionStatus


@pytest.fixture
def yesterday(now):
    return now - timedelta(days=1)


@pytest.fixture
def tomorrow(now):
    return now + timedelta(days=1)


class TestClassifyLifecycle:

    def test_total_over_all_tuples(self, now, yesterday, tomorrow):
        tiers = ["trial", "google_only", "starter", "professional", "chain_starter"]
        dates = [None, yesterday, tomorrow]
        for tier, status, trial_end, sub_end, frozen in itertools.product(
            tiers, list(SubscriptionStatus), dates, dates, [False, True]
        ):
            state = classify_lifecycle(tier, status, trial_end, sub_end, now, frozen=frozen)
            assert isinstance(state, LifecycleState)

    def test_deterministic(self, now, yesterday):
        args = ("starter", "trial", yesterday, None, now)
        assert classify_lifecycle(*args) == classify_lifecycle(*args)

    def test_frozen_wins_over_everything(self, now, yesterday):
        assert classify_lifecycle("professional", "canceled", None, yesterday, now, frozen=True) == LifecycleState.FROZEN

    def test_canceled(self, now, tomorrow):
        assert classify_lifecycle("professional", "canceled", None, tomorrow, now) == LifecycleState.CANCELED

    def test_google_only_trial_ended_is_maintenance(self, now, yesterday):
        assert classify_lifecycle("google_only", "trial", yesterday, None, now) == LifecycleState.MAINTENANCE

    def test_other_trial_ended_defaults_to_expired(self, now, yesterday):
        assert classify_lifecycle("professional", "trial", yesterday, None, now) == LifecycleState.EXPIRED

    def test_trial_expiry_state_from_catalog(self, now, yesterday, catalog):
        state = classify_lifecycle(
            "starter", "trial", yesterday, None, now,
            trial_expiry_state=catalog.get_tier_definition("starter").trial_expiry_state,
        )
        assert state == LifecycleState.MAINTENANCE

    def test_trial_ends_exactly_now(self, now):
        assert classify_lifecycle("google_only", "trial", now, None, now) == LifecycleState.MAINTENANCE

    def test_active_past_end_is_expired(self, now, yesterday):
        assert classify_lifecycle("professional", "active", None, yesterday, now) == LifecycleState.EXPIRED

    def test_past_due(self, now, tomorrow):
        assert classify_lifecycle("professional", "past_due", None, tomorrow, now) == LifecycleState.PAST_DUE

    def test_trialing(self, now, tomorrow):
        assert classify_lifecycle("trial", "trial", tomorrow, None, now) == LifecycleState.TRIALING

    def test_trial_without_end_date_is_trialing(self, now):
        assert classify_lifecycle("trial", "trial", None, None, now) == LifecycleState.TRIALING

    def test_persisted_expired_status(self, now, tomorrow):
        assert classify_lifecycle("professional", "expired", None, tomorrow, now) == LifecycleState.EXPIRED

    def test_active(self, now, tomorrow):
        assert classify_lifecycle("professional", "active", None, tomorrow, now) == LifecycleState.ACTIVE
        assert classify_lifecycle("professional", "active", None, None, now) == LifecycleState.ACTIVE

    def test_naive_datetimes_treated_as_utc(self, now):
        naive_now = now.replace(tzinfo=None)
        naive_yesterday = naive_now - timedelta(days=1)

        assert classify_lifecycle("professional", "active", None, naive_yesterday, now) == LifecycleState.EXPIRED
        assert classify_lifecycle("professional", "active", None, naive_yesterday, naive_now) == LifecycleState.EXPIRED

    def test_unknown_status_raises(self, now):
        with pytest.raises(ValueError):
            classify_lifecycle("professional", "suspended", None, None, now)

    @pytest.mark.parametrize("raw,expected", [
        ("cancelled", SubscriptionStatus.CANCELED),
        ("Trialing", SubscriptionStatus.TRIAL),
        (" ACTIVE ", SubscriptionStatus.ACTIVE),
        ("past-due", SubscriptionStatus.PAST_DUE),
    ])
    def test_status_aliases(self, raw, expected):
        assert SubscriptionStatus.parse(raw) == expected


class TestClassifyTenant:

    def test_starter_trial_ended_yesterday(self, make_tenant, now, catalog):
        tenant = make_tenant(tier="starter", status="trial", trial_days=-1)
        expiry = catalog.get_tier_definition("starter").trial_expiry_state

        assert classify_tenant(tenant, now, expiry) == LifecycleState.MAINTENANCE

    def test_frozen_flag(self, make_tenant, now):
        tenant = make_tenant(frozen=True)
        assert classify_tenant(tenant, now) == LifecycleState.FROZEN

    def test_blocks_growth(self):
        assert LifecycleState.MAINTENANCE.blocks_growth
        assert LifecycleState.FROZEN.blocks_growth
        assert not LifecycleState.PAST_DUE.blocks_growth
        assert not LifecycleState.ACTIVE.blocks_growth


class TestLapsedAt:

    def test_trial_uses_trial_end(self, make_tenant, now):
        tenant = make_tenant(status="trial", trial_days=-2, subscription_days=5)
        assert lapsed_at(tenant) == now - timedelta(days=2)

    def test_paid_uses_subscription_end(self, make_tenant, now):
        tenant = make_tenant(status="active", trial_days=-30, subscription_days=-1)
        assert lapsed_at(tenant) == now - timedelta(days=1)

    def test_no_dates(self, make_tenant):
        assert lapsed_at(make_tenant()) is None
