"""
Tests for PositionAdjuster - the rebalancing control loop.

Validates:
- Warm-up damping and the reentrancy guard (including forced reset)
- Skip while arbitrage pairs are open
- Cash band and net-out decisions per venue
- Failure isolation between venues and at iteration level
- Fire-and-forget order dispatch
"""

import logging
import threading
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest

from core.config_store import ConfigStore
from core.position_adjuster import AdjusterSettings, LoopState, PositionAdjuster
from core.venues import ActionKind, MarginMode
from infra.alerting import AlertSeverity
from infra.metrics import MetricsRecorder
from tests.helpers import StaticActivePairs, StaticPositions, StubVenueAdapter, make_venue


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fast_settings():
    return AdjusterSettings(settle_seconds=0, cooldown_seconds=0)


@pytest.fixture
def metrics():
    return MetricsRecorder(enabled=False)


@pytest.fixture
def build(fast_settings, metrics):
    """Factory: build(venues, positions, adapters, active_pairs=0)"""
    created = []

    def _build(venues, positions, adapters, active_pairs=0, settings=None, alerts=None):
        adjuster = PositionAdjuster(
            config_store=ConfigStore(venues),
            position_provider=positions if hasattr(positions, "get_positions") else StaticPositions(positions),
            active_pair_store=active_pairs if hasattr(active_pairs, "get_active_pair_count")
            else StaticActivePairs(active_pairs),
            adapters=adapters,
            settings=settings or fast_settings,
            metrics=metrics,
            alerts=alerts,
        )
        created.append(adjuster)
        return adjuster

    yield _build
    for adjuster in created:
        adjuster.stop(timeout=5)


def cash_setup(build, observed, free=None, **adapter_kwargs):
    adapter = StubVenueAdapter("Bitbankcc", free_amount=observed if free is None else free, **adapter_kwargs)
    adjuster = build([make_venue("Bitbankcc")], {"Bitbankcc": observed}, {"Bitbankcc": adapter})
    return adjuster, adapter


class TestWarmup:
    def test_first_thirty_ticks_do_nothing(self, build):
        positions = StaticPositions({"Bitbankcc": 5.0})
        adapter = StubVenueAdapter("Bitbankcc", free_amount=5.0)
        adjuster = build([make_venue("Bitbankcc")], positions, {"Bitbankcc": adapter})

        for _ in range(30):
            assert adjuster.tick(NOW).status == "warmup"
        assert positions.calls == 0
        assert adjuster.state.skip_count == 30

        result = adjuster.tick(NOW)
        assert result.status == "adjusted"
        assert result.evaluated == ["Bitbankcc"]
        assert positions.calls == 1
        assert adjuster.state.skip_count == 0

    def test_warmup_repeats_after_each_pass(self, build):
        positions = StaticPositions({"Bitbankcc": 5.0})
        adjuster = build([make_venue("Bitbankcc")], positions, {"Bitbankcc": StubVenueAdapter("Bitbankcc")})

        statuses = [adjuster.tick(NOW).status for _ in range(62)]
        assert statuses.count("adjusted") == 2
        assert statuses[30] == "adjusted"
        assert statuses[61] == "adjusted"

    def test_zero_warmup_runs_every_tick(self, build):
        settings = AdjusterSettings(settle_seconds=0, cooldown_seconds=0, warmup_ticks=0)
        adjuster = build([make_venue("Bitbankcc")], {"Bitbankcc": 5.0},
                         {"Bitbankcc": StubVenueAdapter("Bitbankcc")}, settings=settings)
        assert adjuster.tick(NOW).status == "adjusted"
        assert adjuster.tick(NOW).status == "adjusted"


class TestReentrancyGuard:
    def test_overlapping_tick_increments_retry_count(self, build):
        adjuster = build([], {}, {})
        adjuster.state.is_running = True

        result = adjuster.tick(NOW)

        assert result.status == "overlap"
        assert adjuster.state.retry_count == 1
        assert adjuster.state.is_running is True
        assert adjuster.state.skip_count == 0

    def test_guard_force_cleared_after_retries_exceeded(self, build, metrics):
        alerts = Mock()
        adjuster = build([], {}, {}, alerts=alerts)
        adjuster.state.is_running = True

        for _ in range(31):
            assert adjuster.tick(NOW).status == "overlap"
        assert adjuster.state.retry_count == 31
        assert adjuster.state.is_running is True

        result = adjuster.tick(NOW)
        assert result.status == "guard_reset"
        assert adjuster.state.is_running is False
        assert metrics.guard_resets() == 1
        alerts.notify.assert_called_once()
        assert alerts.notify.call_args[0][0] is AlertSeverity.CRITICAL

    def test_guard_reset_is_logged_distinctly(self, build, caplog):
        adjuster = build([], {}, {})
        adjuster.state = LoopState(is_running=True, retry_count=31)

        with caplog.at_level(logging.ERROR, logger="core.position_adjuster"):
            adjuster.tick(NOW)

        assert any("GUARD STUCK" in r.message for r in caplog.records)

    def test_retry_count_reset_when_iteration_starts(self, build):
        settings = AdjusterSettings(settle_seconds=0, cooldown_seconds=0, warmup_ticks=0)
        adjuster = build([], {}, {}, settings=settings)
        adjuster.state = LoopState(is_running=True, retry_count=31)

        adjuster.tick(NOW)  # forced reset
        assert adjuster.tick(NOW).status == "adjusted"
        assert adjuster.state.retry_count == 0

    def test_tick_while_iteration_in_progress(self, build):
        """A real overlap: tick N waits on the active pair store while tick N+1 fires"""
        entered = threading.Event()
        release = threading.Event()

        class SlowActivePairs:
            def get_active_pair_count(self):
                entered.set()
                release.wait(timeout=5)
                return 0

        settings = AdjusterSettings(settle_seconds=0, cooldown_seconds=0, warmup_ticks=0)
        adjuster = build([], {}, {}, active_pairs=SlowActivePairs(), settings=settings)

        worker = threading.Thread(target=adjuster.tick, args=(NOW,))
        worker.start()
        assert entered.wait(timeout=5)

        assert adjuster.tick(NOW).status == "overlap"
        assert adjuster.state.retry_count == 1

        release.set()
        worker.join(timeout=5)
        assert adjuster.state.is_running is False

    def test_stale_iteration_does_not_clear_newer_guard(self, build):
        adjuster = build([], {}, {})

        class NewerIterationStarts:
            def get_active_pair_count(self):
                # Simulate: guard force-cleared and a newer iteration took over
                adjuster.state.generation += 1
                adjuster.state.is_running = True
                return 0

        adjuster.active_pair_store = NewerIterationStarts()
        adjuster.run_once(NOW)

        assert adjuster.state.is_running is True


class TestActivePairs:
    def test_skips_rebalancing_with_open_pairs(self, build):
        positions = StaticPositions({"Bitbankcc": 9.0})
        adapter = StubVenueAdapter("Bitbankcc", free_amount=9.0)
        adjuster = build([make_venue("Bitbankcc")], positions, {"Bitbankcc": adapter}, active_pairs=2)

        result = adjuster.run_once(NOW)

        assert result.status == "active_pairs"
        assert positions.calls == 0
        assert adapter.calls == []
        assert adjuster.state.is_running is False

    def test_delays(self, build):
        settings = AdjusterSettings(settle_seconds=5, cooldown_seconds=5)
        adjuster = build([], {}, {}, settings=settings)
        with patch("core.position_adjuster.time.sleep") as mock_sleep:
            adjuster.run_once(NOW)
        assert [c.args[0] for c in mock_sleep.call_args_list] == [5, 5]

    def test_only_cooldown_when_pairs_open(self, build):
        settings = AdjusterSettings(settle_seconds=5, cooldown_seconds=7)
        adjuster = build([], {}, {}, active_pairs=1, settings=settings)
        with patch("core.position_adjuster.time.sleep") as mock_sleep:
            adjuster.run_once(NOW)
        assert [c.args[0] for c in mock_sleep.call_args_list] == [7]


class TestCashMode:
    def test_sell_above_band(self, build):
        adjuster, adapter = cash_setup(build, observed=7.0)

        result = adjuster.run_once(NOW)
        assert adjuster.wait_for_orders(timeout=5)

        assert [a.kind for a in result.actions] == [ActionKind.SELL]
        assert adapter.calls == [("sell", pytest.approx(2.0))]

    def test_sell_uses_free_amount(self, build):
        adjuster, adapter = cash_setup(build, observed=7.0, free=6.5)
        adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)
        assert adapter.calls == [("sell", pytest.approx(1.5))]

    def test_buy_below_band(self, build):
        adjuster, adapter = cash_setup(build, observed=3.0)
        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert [a.kind for a in result.actions] == [ActionKind.BUY]
        assert adapter.calls == [("buy", pytest.approx(2.0))]

    def test_buy_in_quote_notional(self, build):
        adjuster, adapter = cash_setup(build, observed=3.0, rate=4_500_000.0, buy_in_quote=True)
        adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)
        assert adapter.calls == [("buy", pytest.approx(9_000_000.0))]

    @pytest.mark.parametrize("observed", [5.0, 6.0, 4.0, 4.5, 5.9])
    def test_dead_zone(self, build, observed):
        adjuster, adapter = cash_setup(build, observed=observed)
        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.actions == []
        assert adapter.calls == []
        assert result.evaluated == ["Bitbankcc"]


class TestNetOutMode:
    @pytest.mark.parametrize("observed", [0.01, -0.01, 0.3])
    def test_close_all_outside_epsilon(self, build, observed):
        adapter = StubVenueAdapter("Quoine")
        adjuster = build([make_venue("Quoine", mode=MarginMode.NET_OUT)], {"Quoine": observed}, {"Quoine": adapter})

        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert [a.kind for a in result.actions] == [ActionKind.CLOSE_ALL]
        assert adapter.calls == [("close_all", None)]

    @pytest.mark.parametrize("observed", [0.003, -0.003, 0.005, 0.0])
    def test_no_action_within_epsilon(self, build, observed):
        adapter = StubVenueAdapter("Quoine")
        adjuster = build([make_venue("Quoine", mode=MarginMode.NET_OUT)], {"Quoine": observed}, {"Quoine": adapter})

        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.actions == []
        assert adapter.calls == []


class TestVenueSelection:
    def test_missing_position_skips_venue_only(self, build, caplog):
        a = StubVenueAdapter("Bitbankcc", free_amount=8.0)
        b = StubVenueAdapter("Coincheck", free_amount=8.0)
        adjuster = build(
            [make_venue("Bitbankcc"), make_venue("Coincheck")],
            {"Coincheck": 8.0},
            {"Bitbankcc": a, "Coincheck": b},
        )

        with caplog.at_level(logging.WARNING, logger="core.position_adjuster"):
            result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.status == "adjusted"
        assert result.skipped == {"Bitbankcc": "position_unknown"}
        assert a.calls == []
        assert b.calls == [("sell", pytest.approx(3.0))]
        assert any("Unable to find base ccy position in Bitbankcc" in r.message for r in caplog.records)

    def test_disabled_venue_not_evaluated(self, build):
        adapter = StubVenueAdapter("Bitbankcc", free_amount=9.0)
        adjuster = build([make_venue("Bitbankcc", enabled=False)], {"Bitbankcc": 9.0}, {"Bitbankcc": adapter})

        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.evaluated == []
        assert adapter.calls == []

    def test_no_trade_period_skips_venue(self, build):
        adapter = StubVenueAdapter("Bitbankcc", free_amount=9.0)
        venue = make_venue("Bitbankcc", periods=[("2026-03-01T11:00:00+00:00", "2026-03-01T13:00:00+00:00")])
        adjuster = build([venue], {"Bitbankcc": 9.0}, {"Bitbankcc": adapter})

        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.skipped == {"Bitbankcc": "no_trade_period"}
        assert adapter.calls == []

    def test_invalid_no_trade_period_does_not_block(self, build, caplog):
        adapter = StubVenueAdapter("Bitbankcc", free_amount=9.0)
        venue = make_venue("Bitbankcc", periods=[("not-a-date", "2026-03-01T13:00:00+00:00")])
        adjuster = build([venue], {"Bitbankcc": 9.0}, {"Bitbankcc": adapter})

        with caplog.at_level(logging.WARNING, logger="core.venues"):
            result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.evaluated == ["Bitbankcc"]
        assert adapter.calls == [("sell", pytest.approx(4.0))]
        assert any("Invalid no_trade_periods" in r.message for r in caplog.records)

    def test_venue_without_adapter_skipped(self, build):
        adjuster = build([make_venue("Bitbankcc")], {"Bitbankcc": 9.0}, {})
        result = adjuster.run_once(NOW)
        assert result.skipped == {"Bitbankcc": "no_adapter"}
        assert result.actions == []


class TestFailureHandling:
    def test_venue_failure_is_isolated(self, build, metrics):
        alerts = Mock()
        failing = StubVenueAdapter("Bitbankcc", free_amount=9.0, fail_with=RuntimeError("rejected"))
        healthy = StubVenueAdapter("Quoine")
        adjuster = build(
            [make_venue("Bitbankcc"), make_venue("Quoine", mode=MarginMode.NET_OUT)],
            {"Bitbankcc": 9.0, "Quoine": 0.2},
            {"Bitbankcc": failing, "Quoine": healthy},
            alerts=alerts,
        )

        result = adjuster.run_once(NOW)
        assert adjuster.wait_for_orders(timeout=5)

        assert result.status == "adjusted"
        assert healthy.calls == [("close_all", None)]
        actions = metrics.venue_actions()
        assert actions["Bitbankcc:sell:failed"] == 1
        assert actions["Quoine:close_all:ok"] == 1
        alerts.notify.assert_called_once()
        assert alerts.notify.call_args[0][0] is AlertSeverity.WARNING
        assert adjuster.state.is_running is False

    def test_iteration_error_still_clears_guard(self, build, caplog):
        positions = Mock()
        positions.get_positions.side_effect = RuntimeError("position service down")
        adjuster = build([make_venue("Bitbankcc")], positions, {})

        with caplog.at_level(logging.ERROR, logger="core.position_adjuster"):
            result = adjuster.run_once(NOW)

        assert result.status == "error"
        assert "position service down" in result.error
        assert adjuster.state.is_running is False
        failure_logs = [r for r in caplog.records if "iteration failed" in r.message]
        assert failure_logs and failure_logs[0].exc_info is not None

    def test_active_pair_store_error_still_clears_guard(self, build):
        store = Mock()
        store.get_active_pair_count.side_effect = OSError("state file unreadable")
        adjuster = build([], {}, {}, active_pairs=store)

        result = adjuster.run_once(NOW)

        assert result.status == "error"
        assert adjuster.state.is_running is False

    def test_evaluation_error_skips_only_that_venue(self, build):
        good = StubVenueAdapter("Coincheck", free_amount=9.0)
        adjuster = build(
            [make_venue("Bitbankcc"), make_venue("Coincheck")],
            {"Bitbankcc": "garbage", "Coincheck": 9.0},
            {"Bitbankcc": StubVenueAdapter("Bitbankcc"), "Coincheck": good},
        )

        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.skipped == {"Bitbankcc": "evaluation_error"}
        assert good.calls == [("sell", pytest.approx(4.0))]


class TestDispatch:
    def test_iteration_finishes_before_order_completes(self, build):
        release = threading.Event()
        adjuster, adapter = cash_setup(build, observed=9.0, block=release)

        result = adjuster.run_once(NOW)

        assert result.status == "adjusted"
        assert adjuster.state.is_running is False
        assert adapter.calls == []
        assert adjuster.wait_for_orders(timeout=0.05) is False

        release.set()
        assert adjuster.wait_for_orders(timeout=5) is True
        assert adapter.calls == [("sell", pytest.approx(4.0))]

    def test_tick_outcomes_recorded(self, build, metrics):
        adjuster = build([], {}, {})
        adjuster.tick(NOW)
        adjuster.state.is_running = True
        adjuster.tick(NOW)

        assert metrics.tick_outcomes() == {"warmup": 1, "overlap": 1}
        assert metrics.last_tick().status == "overlap"

    def test_dispatch_failure_does_not_stop_other_venues(self, build, caplog):
        a = StubVenueAdapter("Bitbankcc", free_amount=9.0)
        b = StubVenueAdapter("Coincheck", free_amount=9.0)
        adjuster = build(
            [make_venue("Bitbankcc"), make_venue("Coincheck")],
            {"Bitbankcc": 9.0, "Coincheck": 9.0},
            {"Bitbankcc": a, "Coincheck": b},
        )
        submit = adjuster._executor.submit

        def refuse_first_venue(fn, action, *args):
            if action.venue == "Bitbankcc":
                raise RuntimeError("cannot schedule new futures after shutdown")
            return submit(fn, action, *args)

        with patch.object(adjuster._executor, "submit", side_effect=refuse_first_venue):
            with caplog.at_level(logging.ERROR, logger="core.position_adjuster"):
                result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert result.status == "adjusted"
        assert result.skipped == {"Bitbankcc": "dispatch_error"}
        assert [act.venue for act in result.actions] == ["Coincheck"]
        assert a.calls == []
        assert b.calls == [("sell", pytest.approx(4.0))]
        assert any("Failed to dispatch sell for Bitbankcc" in r.message for r in caplog.records)

    def test_no_order_placed_recorded_as_skipped(self, build, metrics):
        # Observed position is above the band but most of it is locked in open orders
        adjuster, adapter = cash_setup(build, observed=9.0, free=4.0)

        result = adjuster.run_once(NOW)
        adjuster.wait_for_orders(timeout=5)

        assert [a.kind for a in result.actions] == [ActionKind.SELL]
        assert adapter.calls == []
        assert metrics.venue_actions() == {"Bitbankcc:sell:skipped": 1}
