"""
Tests for outcome reporting: success, rate limits, dead keys, missing
models, transient failures and request errors.
"""

import httpx
import pytest

from quota_broker import ExclusionReason, FailureKind, NoAvailableCandidateError, WindowKind

from fixtures.broker_mocks import GEMINI_QUOTA_BODY, add_key, http_status_error


def in_flight(broker, binding):
    return broker.catalog.get_record(binding.id).in_flight


class TestRecordUsage:

    @pytest.mark.asyncio
    async def test_success_releases_lease_and_counts(self, broker, store):
        _, binding = await add_key(broker, "key-success-0001")
        candidate = await broker.select_candidate()
        saves_before = store.save_count

        status = await broker.record_usage(candidate, tokens_consumed=321)

        assert not status.exhausted
        assert in_flight(broker, binding) == 0
        assert binding.usage.rpm.used == 1
        assert binding.usage.tpm.used == 321
        assert store.save_count > saves_before

    @pytest.mark.asyncio
    async def test_success_clears_exclusion(self, broker, clock):
        """Test that a successful call after a cooldown resets the backoff."""
        _, binding = await add_key(broker, "key-recover-0001")
        await broker.exclude(binding.id, ExclusionReason.QUOTA_EXHAUSTED, cooldown=30)
        clock.advance(31)

        candidate = await broker.select_candidate()
        await broker.record_usage(candidate)

        assert broker.ledger.get(binding.id) is None

    @pytest.mark.asyncio
    async def test_older_call_success_keeps_newer_exclusion(self, broker, clock):
        """Test that a call selected before a 429 cannot lift the exclusion that 429 caused."""
        _, binding = await add_key(broker, "key-overlap-0001")
        early = await broker.select_candidate()
        late = await broker.select_candidate()

        await broker.report_rate_limited(late, retry_after=300)
        await broker.record_usage(early)

        entry = broker.ledger.get(binding.id)
        assert entry is not None
        assert entry.retry_count == 1
        assert entry.retry_at - clock.now == 300

        clock.advance(61)
        with pytest.raises(NoAvailableCandidateError):
            await broker.select_candidate()

        clock.advance(240)
        assert (await broker.select_candidate()).binding.id == binding.id

    @pytest.mark.asyncio
    async def test_usage_by_binding_id_keeps_exclusion(self, broker):
        _, binding = await add_key(broker, "key-overlap-0002")
        await broker.exclude(binding.id, ExclusionReason.QUOTA_EXHAUSTED, cooldown=30)

        await broker.record_usage(binding.id, tokens_consumed=10)

        assert broker.ledger.is_excluded(binding.id)

    @pytest.mark.asyncio
    async def test_record_by_binding_id(self, broker):
        """Test that usage can be recorded without a candidate, e.g. from a replayed log."""
        _, binding = await add_key(broker, "key-replay-00001")
        await broker.record_usage(binding.id, tokens_consumed=50)
        assert binding.usage.tpm.used == 50


class TestReportError:

    @pytest.mark.asyncio
    async def test_gemini_quota_error(self, broker, clock):
        """Test that a daily quota 429 exhausts RPD and uses the provider's retry delay."""
        _, binding = await add_key(broker, "key-quota-00001", limits={"rpd": 250})
        candidate = await broker.select_candidate()

        classified = await broker.report_error(candidate, http_status_error(429, GEMINI_QUOTA_BODY))

        entry = broker.ledger.get(binding.id)
        assert classified.kind is FailureKind.QUOTA_EXHAUSTED
        assert classified.window is WindowKind.RPD
        assert entry.reason is ExclusionReason.QUOTA_EXHAUSTED
        assert entry.retry_at - clock.now == 42
        assert binding.usage.rpd.used == 250
        assert in_flight(broker, binding) == 0

    @pytest.mark.asyncio
    async def test_plain_rate_limit_with_retry_after_header(self, broker, clock):
        _, binding = await add_key(broker, "key-ratelimit-01", limits={"rpm": 10})
        candidate = await broker.select_candidate()

        classified = await broker.report_error(
            candidate, http_status_error(429, "Too many requests", {"Retry-After": "10"})
        )

        entry = broker.ledger.get(binding.id)
        assert classified.kind is FailureKind.RATE_LIMITED
        assert entry.reason is ExclusionReason.RATE_LIMITED
        assert entry.retry_at - clock.now == 10
        assert binding.usage.rpm.used == 10

    @pytest.mark.asyncio
    async def test_invalid_key_deactivates_credential(self, broker):
        credential, binding = await add_key(broker, "key-invalid-0001")
        candidate = await broker.select_candidate()

        classified = await broker.report_error(
            candidate, http_status_error(401, "API key not valid. Please pass a valid API key.")
        )

        assert classified.kind is FailureKind.CREDENTIAL_INVALID
        assert not credential.is_active
        assert credential.description == "Automatically disabled: INVALID_KEY"
        assert in_flight(broker, binding) == 0

    @pytest.mark.asyncio
    async def test_leaked_key_reason(self, broker):
        credential, _ = await add_key(broker, "key-leaked-00001")
        candidate = await broker.select_candidate()

        await broker.report_error(
            candidate, http_status_error(403, "Your API key was reported as leaked.")
        )

        assert credential.description == "Automatically disabled: LEAKED_KEY"

    @pytest.mark.asyncio
    async def test_permission_denied_reason(self, broker):
        credential, _ = await add_key(broker, "key-forbidden-01")
        candidate = await broker.select_candidate()

        await broker.report_error(candidate, http_status_error(403, "Forbidden"))

        assert credential.description == "Automatically disabled: 403_PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_activate_clears_auto_disable(self, broker):
        credential, _ = await add_key(broker, "key-reactivate-1")
        await broker.deactivate_credential(credential.id, "INVALID_KEY")
        await broker.deactivate_credential(credential.id, "SOMETHING_ELSE")
        assert credential.description == "Automatically disabled: INVALID_KEY"

        await broker.activate_credential(credential.id)

        assert credential.is_active
        assert credential.description == ""
        assert (await broker.select_candidate()).credential is credential

    @pytest.mark.asyncio
    async def test_missing_model_disables_binding(self, broker):
        credential, binding = await add_key(broker, "key-nomodel-0001")
        candidate = await broker.select_candidate()

        classified = await broker.report_error(
            candidate, http_status_error(404, "models/gemini-9 is not found for API version v1beta")
        )

        assert classified.kind is FailureKind.MODEL_UNAVAILABLE
        assert not binding.is_enabled
        assert credential.is_active
        assert in_flight(broker, binding) == 0

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, broker, clock):
        """Test that a 5xx gets the short fixed cooldown."""
        _, binding = await add_key(broker, "key-overload-001")
        candidate = await broker.select_candidate()

        classified = await broker.report_error(
            candidate, http_status_error(503, "The model is overloaded.")
        )

        entry = broker.ledger.get(binding.id)
        assert classified.kind is FailureKind.TRANSIENT
        assert entry.reason is ExclusionReason.TRANSIENT_ERROR
        assert entry.retry_at - clock.now == 15
        assert binding.usage.rpm.used == 0

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, broker):
        _, binding = await add_key(broker, "key-timeout-0001")
        candidate = await broker.select_candidate()

        classified = await broker.report_error(candidate, httpx.ConnectTimeout("timed out"))

        assert classified.kind is FailureKind.TRANSIENT
        assert broker.ledger.is_excluded(binding.id)

    @pytest.mark.asyncio
    async def test_unknown_error_is_treated_as_transient(self, broker):
        _, binding = await add_key(broker, "key-unknown-0001")
        candidate = await broker.select_candidate()

        classified = await broker.report_error(candidate, RuntimeError("something odd"))

        assert classified.kind is FailureKind.UNKNOWN
        assert broker.ledger.get(binding.id).reason is ExclusionReason.TRANSIENT_ERROR

    @pytest.mark.asyncio
    async def test_request_error_counts_usage_without_exclusion(self, broker):
        """Test that a bad request is charged to the key but does not bench it."""
        _, binding = await add_key(broker, "key-badreq-00001")
        candidate = await broker.select_candidate()

        classified = await broker.report_error(
            candidate, http_status_error(400, "Invalid argument: temperature must be <= 2")
        )

        assert classified.kind is FailureKind.REQUEST_ERROR
        assert not classified.kind.should_rotate
        assert broker.ledger.get(binding.id) is None
        assert binding.usage.rpm.used == 1
        assert in_flight(broker, binding) == 0


class TestAdministration:

    @pytest.mark.asyncio
    async def test_seed_model_adds_to_every_matching_credential(self, broker):
        await add_key(broker, "key-seed-000001")
        await add_key(broker, "key-seed-000002")
        await add_key(broker, "gsk_seed-000003", provider="GROQ", model="llama-3.1-8b-instant")

        created = await broker.seed_model("GOOGLE", "gemini-2.5-pro")
        again = await broker.seed_model("GOOGLE", "gemini-2.5-pro")

        assert len(created) == 2
        assert again == []
        assert all(b.usage.rpm.limit == 5 for b in created)

    @pytest.mark.asyncio
    async def test_duplicate_binding_rejected(self, broker):
        credential, _ = await add_key(broker, "key-duplicate-01")
        with pytest.raises(ValueError):
            await broker.add_binding(credential.id, "gemini-2.5-flash")

    @pytest.mark.asyncio
    async def test_add_credential_with_models(self, broker):
        credential = await broker.add_credential(
            "google", "key-with-models-1", models=["gemini-2.5-flash", "gemini-2.5-pro"]
        )
        names = [b.model_name for b in broker.catalog.bindings_for_credential(credential.id)]
        assert names == ["gemini-2.5-flash", "gemini-2.5-pro"]

    @pytest.mark.asyncio
    async def test_clear_exclusions(self, broker):
        _, first = await add_key(broker, "key-clear-000001")
        _, second = await add_key(broker, "key-clear-000002")
        await broker.exclude(first.id, ExclusionReason.RATE_LIMITED)
        await broker.exclude(second.id, ExclusionReason.RATE_LIMITED)

        assert await broker.clear_exclusions(first.id) == 1
        assert await broker.clear_exclusions() == 1
        assert await broker.list_exclusions() == []
