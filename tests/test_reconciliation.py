"""
Tests for the periodic reconciliation sweep.
"""

import asyncio
import json

import pytest

from quota_broker import (
    ExclusionReason,
    MemoryStateStore,
    NoAvailableCandidateError,
    QuotaBroker,
    ReconciliationSweep,
)

from fixtures.broker_mocks import add_key


def corrupt_state():
    return {
        "credentials": [
            {"id": "cred-1", "provider": "GOOGLE", "secret": "key-corrupt-0001", "priority": 1}
        ],
        "bindings": [
            {
                "id": 1,
                "credentialId": "cred-1",
                "modelName": "gemini-2.5-flash",
                "usage": "{definitely not json",
            }
        ],
        "exclusions": {},
    }


class TestSweepPass:

    @pytest.mark.asyncio
    async def test_repairs_corrupt_usage(self, settings, clock):
        """Test that a corrupt usage document is rewritten with the model's limits."""
        store = MemoryStateStore(initial=corrupt_state())
        broker = QuotaBroker(store=store, settings=settings, clock=clock)

        report = await ReconciliationSweep(broker).run_once()

        binding = broker.catalog.get_binding(1)
        assert report.repaired_usage == 1
        assert not binding.usage_corrupt
        assert binding.usage.rpm.limit == 10
        persisted = json.loads(store.state["bindings"][0]["usage"])
        assert persisted["rpd"]["limit"] == 250

    @pytest.mark.asyncio
    async def test_corrupt_binding_is_still_selectable(self, settings, clock):
        broker = QuotaBroker(
            store=MemoryStateStore(initial=corrupt_state()), settings=settings, clock=clock
        )
        candidate = await broker.select_candidate()
        assert candidate.binding.id == 1

    @pytest.mark.asyncio
    async def test_sweeps_expired_exclusions(self, broker, clock):
        _, binding = await add_key(broker, "key-sweep-excl-1")
        await broker.exclude(binding.id, ExclusionReason.RATE_LIMITED, cooldown=30)
        sweep = ReconciliationSweep(broker)

        assert (await sweep.run_once()).expired_exclusions == 0
        clock.advance(30)
        assert (await sweep.run_once()).expired_exclusions == 1
        assert broker.ledger.get(binding.id) is None

    @pytest.mark.asyncio
    async def test_reclaims_abandoned_leases(self, broker, clock):
        """Test that reservations that never reported back are charged and freed after the lease TTL."""
        _, binding = await add_key(broker, "key-sweep-lease1", limits={"rpm": 1})
        await broker.select_candidate()
        sweep = ReconciliationSweep(broker)

        clock.advance(60)
        assert (await sweep.run_once()).reclaimed_leases == 0
        clock.advance(61)
        report = await sweep.run_once()

        assert report.reclaimed_leases == 1
        assert broker.catalog.get_record(binding.id).in_flight == 0
        assert binding.usage.rpm.used == 1
        with pytest.raises(NoAvailableCandidateError):
            await broker.select_candidate()

        clock.advance(60)
        assert (await broker.select_candidate()).binding.id == binding.id

    @pytest.mark.asyncio
    async def test_clears_stale_flags_and_rolls_windows(self, broker, clock):
        _, binding = await add_key(broker, "key-sweep-flag01")
        await broker.tracker.mark_exhausted_now(binding)
        clock.advance(61)

        report = await ReconciliationSweep(broker).run_once()

        assert report.cleared_exhausted_flags == 1
        assert report.rolled_windows == 1
        assert binding.usage.exhausted_at is None
        assert binding.usage.rpm.used == 0

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(self, settings, clock):
        """Test that the sweep is idempotent."""
        broker = QuotaBroker(
            store=MemoryStateStore(initial=corrupt_state()), settings=settings, clock=clock
        )
        await broker.initialize()
        binding = broker.catalog.get_binding(1)
        await broker.exclude(binding.id, ExclusionReason.TRANSIENT_ERROR)
        await broker.tracker.mark_exhausted_now(binding)
        clock.advance(200)
        sweep = ReconciliationSweep(broker)

        first = await sweep.run_once()
        snapshot = broker.snapshot()
        second = await sweep.run_once()

        assert first.expired_exclusions == 1
        assert first.repaired_usage == 1
        assert (
            second.expired_exclusions,
            second.repaired_usage,
            second.cleared_exhausted_flags,
            second.reclaimed_leases,
            second.rolled_windows,
        ) == (0, 0, 0, 0, 0)
        assert broker.snapshot() == snapshot

    @pytest.mark.asyncio
    async def test_sweep_never_shortens_active_exclusions(self, broker, clock):
        _, binding = await add_key(broker, "key-sweep-keep01")
        entry = await broker.exclude(binding.id, ExclusionReason.QUOTA_EXHAUSTED, cooldown=600)

        await ReconciliationSweep(broker).run_once()

        assert broker.ledger.get(binding.id) == entry
        assert broker.ledger.is_excluded(binding.id)


class TestHealthReport:

    @pytest.mark.asyncio
    async def test_health_counts(self, broker):
        await add_key(broker, "key-health-00001")
        _, excluded = await add_key(broker, "key-health-00002")
        _, exhausted = await add_key(broker, "key-health-00003", limits={"rpm": 1})
        inactive, _ = await add_key(broker, "key-health-00004")

        await broker.exclude(excluded.id, ExclusionReason.RATE_LIMITED)
        await broker.record_usage(exhausted.id)
        await broker.deactivate_credential(inactive.id, "INVALID_KEY")

        report = await ReconciliationSweep(broker).run_once()

        assert report.health == {
            "healthy": 1,
            "exhausted": 1,
            "excluded": 1,
            "disabled": 1,
            "inactive_credentials": 1,
            "corrupt_usage": 0,
        }
        assert report.to_dict()["health"]["healthy"] == 1


class TestBackgroundTask:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, broker):
        await add_key(broker, "key-background-1")
        sweep = ReconciliationSweep(broker, interval=3600)

        sweep.start()
        for _ in range(20):
            if sweep.last_report is not None:
                break
            await asyncio.sleep(0)

        assert sweep.is_running
        assert sweep.last_report is not None
        await sweep.stop()
        assert not sweep.is_running
