import asyncio
import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Set, TypeVar

from .error_handler import AttemptLog, NoAvailableCandidateError, mask_credential
from .models import Candidate, Requirement

if TYPE_CHECKING:
    from .broker import QuotaBroker

lib_logger = logging.getLogger("quota_broker")

T = TypeVar("T")


def extract_total_tokens(response: Any) -> int:
    """
    Read the total token count from a completion response.

    Understands litellm/OpenAI style objects (`response.usage.total_tokens`)
    and plain dicts with the same shape. Returns 0 when nothing is reported.
    """
    usage = getattr(response, "usage", None)
    if usage is None and isinstance(response, dict):
        usage = response.get("usage")
    if usage is None:
        return 0
    if isinstance(usage, dict):
        total = usage.get("total_tokens")
        if total is None:
            total = (usage.get("prompt_tokens") or 0) + (usage.get("completion_tokens") or 0)
    else:
        total = getattr(usage, "total_tokens", None)
        if total is None:
            total = (getattr(usage, "prompt_tokens", 0) or 0) + (
                getattr(usage, "completion_tokens", 0) or 0
            )
    try:
        return max(0, int(total))
    except (TypeError, ValueError):
        return 0


class FailoverExecutor:
    """
    Runs a caller-supplied inference call against successive candidates.

    Every attempt reports exactly one outcome to the broker. Failures that
    another candidate could fix (quota, rate limits, transient errors, dead
    keys, missing models) move on to the next candidate; a request error is
    re-raised at once because rotating will not help. When attempts run out,
    or the broker has nothing left to offer, NoAvailableCandidateError is
    raised with an AttemptLog of what was tried.
    """

    def __init__(self, broker: "QuotaBroker", max_attempts: Optional[int] = None):
        self._broker = broker
        self.max_attempts = max_attempts or broker.settings.max_attempts

    async def execute(
        self,
        requirement: Requirement,
        call: Callable[[Candidate], Awaitable[T]],
        token_counter: Optional[Callable[[T], int]] = None,
    ) -> T:
        """
        Args:
            requirement: What the call needs
            call: Awaitable factory taking the candidate (use candidate.api_key
                and candidate.model_name)
            token_counter: Extracts tokens consumed from the result. Defaults
                to reading `usage.total_tokens`.

        Returns:
            The result of the first successful call
        """
        attempts = AttemptLog(requirement.describe())
        tried: Set[int] = set()
        retry_after: Optional[float] = None
        count_tokens = token_counter or extract_total_tokens

        for attempt in range(self.max_attempts):
            narrowed = dataclasses.replace(
                requirement,
                exclude_binding_ids=requirement.exclude_binding_ids | frozenset(tried),
            )
            try:
                candidate = await self._broker.select_candidate(narrowed)
            except NoAvailableCandidateError as e:
                if not attempts:
                    raise
                retry_after = e.retry_after
                break

            label = f"{mask_credential(candidate.api_key)}/{candidate.model_name}"
            lib_logger.info(
                f"Attempting call with {label} (Attempt {attempt + 1}/{self.max_attempts})"
            )
            try:
                result = await call(candidate)
            except asyncio.CancelledError:
                await self._broker.release(candidate)
                raise
            except Exception as e:
                classified = await self._broker.report_error(candidate, e)
                attempts.record(label, classified)
                if not classified.kind.should_rotate:
                    lib_logger.error(
                        f"Non-recoverable error ({classified.kind.value}) from {label}. Failing."
                    )
                    raise
                tried.add(candidate.binding.id)
                lib_logger.warning(
                    f"{label} failed with {classified.kind.value}; rotating to next candidate"
                )
                continue

            await self._broker.record_usage(candidate, count_tokens(result))
            return result

        if retry_after is None:
            retry_after = await self._broker.earliest_recovery(requirement)
        lib_logger.error(attempts.build_log_message())
        raise NoAvailableCandidateError(
            attempts.client_message(),
            requirement=requirement.describe(),
            retry_after=retry_after,
            attempts=attempts,
        )
