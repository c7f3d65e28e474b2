"""
Concurrency tests for the broker.

Many tasks select at the same time; reservations taken under each
binding's lock must keep admissions within the configured limits.
"""

import asyncio
from collections import Counter

import pytest

from quota_broker import NoAvailableCandidateError, Requirement

from fixtures.broker_mocks import add_key


async def try_select(broker, requirement=None):
    try:
        return await broker.select_candidate(requirement)
    except NoAvailableCandidateError:
        return None


class TestBoundedAdmission:

    @pytest.mark.asyncio
    async def test_concurrent_selects_never_exceed_rpm(self, broker):
        """Test that 20 simultaneous selections on an RPM-5 key admit exactly 5."""
        await add_key(broker, "key-concurrent-01", limits={"rpm": 5})

        results = await asyncio.gather(*(try_select(broker) for _ in range(20)))
        admitted = [c for c in results if c is not None]

        assert len(admitted) == 5
        assert len({c.lease_id for c in admitted}) == 5
        assert broker.catalog.get_record(admitted[0].binding.id).in_flight == 5

    @pytest.mark.asyncio
    async def test_recorded_and_in_flight_share_the_budget(self, broker):
        """Test that admitted-but-unfinished and finished calls together respect the limit."""
        await add_key(broker, "key-concurrent-02", limits={"rpm": 5})

        first_wave = await asyncio.gather(*(try_select(broker) for _ in range(3)))
        await asyncio.gather(*(broker.record_usage(c, 5) for c in first_wave[:2]))
        second_wave = await asyncio.gather(*(try_select(broker) for _ in range(10)))

        assert all(c is not None for c in first_wave)
        assert len([c for c in second_wave if c is not None]) == 2

    @pytest.mark.asyncio
    async def test_predicted_tokens_bound_tpm(self, broker):
        """Test that predicted token reservations stop admissions before TPM overflows."""
        await add_key(broker, "key-concurrent-03", limits={"rpm": 1000, "tpm": 1000})
        requirement = Requirement(predicted_tokens=300)

        results = await asyncio.gather(*(try_select(broker, requirement) for _ in range(10)))

        assert len([c for c in results if c is not None]) == 3

    @pytest.mark.asyncio
    async def test_release_frees_a_slot(self, broker):
        _, binding = await add_key(broker, "key-concurrent-04", limits={"rpm": 1})

        candidate = await broker.select_candidate()
        assert await try_select(broker) is None

        assert await broker.release(candidate, attempted=False)
        assert not await broker.release(candidate)
        assert await try_select(broker) is not None
        assert binding.usage.rpm.used == 0

    @pytest.mark.asyncio
    async def test_release_of_a_sent_request_still_counts(self, broker):
        """Test that abandoning a call the provider already saw keeps its slot used."""
        _, binding = await add_key(broker, "key-concurrent-06", limits={"rpm": 1})

        candidate = await broker.select_candidate(Requirement(predicted_tokens=40))
        assert await broker.release(candidate)

        assert broker.catalog.get_record(binding.id).in_flight == 0
        assert (binding.usage.rpm.used, binding.usage.tpm.used) == (1, 40)
        assert await try_select(broker) is None

    @pytest.mark.asyncio
    async def test_overflow_spills_to_next_key(self, broker):
        """Test that once the primary key is full, concurrent callers move to the backup."""
        await add_key(broker, "key-primary-0005", priority=1, limits={"rpm": 4})
        await add_key(broker, "key-backup-00005", priority=2, limits={"rpm": 4})

        results = await asyncio.gather(*(try_select(broker) for _ in range(10)))
        counts = Counter(c.api_key for c in results if c is not None)

        assert counts == {"key-primary-0005": 4, "key-backup-00005": 4}


class TestConcurrentFairness:

    @pytest.mark.asyncio
    async def test_round_robin_under_load(self, broker):
        """Test that concurrent work spreads evenly over equal keys."""
        names = ["key-fair-000001", "key-fair-000002", "key-fair-000003"]
        for name in names:
            await add_key(broker, name)

        async def worker():
            candidate = await broker.select_candidate()
            await asyncio.sleep(0)
            await broker.record_usage(candidate, tokens_consumed=25)
            return candidate.api_key

        results = await asyncio.gather(*(worker() for _ in range(30)))

        assert Counter(results) == {name: 10 for name in names}

    @pytest.mark.asyncio
    async def test_outcomes_reported_concurrently_are_all_counted(self, broker):
        _, binding = await add_key(broker, "key-counting-001")

        candidates = [await broker.select_candidate() for _ in range(25)]
        await asyncio.gather(*(broker.record_usage(c, tokens_consumed=4) for c in candidates))

        assert binding.usage.rpm.used == 25
        assert binding.usage.tpm.used == 100
        assert broker.catalog.get_record(binding.id).in_flight == 0
