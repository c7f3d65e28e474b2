import math
import re
import time
import logging
from typing import Awaitable, Callable, List, Optional

from .model_limits import ModelLimits
from .models import (
    ModelBinding,
    Provider,
    UsageDocument,
    UsageStatus,
    WindowKind,
)

lib_logger = logging.getLogger("quota_broker")

ChangeHook = Callable[[], Awaitable[None]]

_ARABIC_CHARS = re.compile(r"[\u0600-\u06FF]")
_ENGLISH_WORDS = re.compile(r"[a-zA-Z]+")
_NUMBERS = re.compile(r"\d+")


def estimate_token_count(text: Optional[str], provider: Provider = Provider.GOOGLE) -> int:
    """
    Rough token estimate for a prompt, used to fill `predicted_tokens`.

    DeepSeek's tokenizer packs Arabic tighter (about 4 chars per token) and
    spends about 1.3 tokens per English word. Everything else is estimated
    like Gemini: about 3.5 characters per token plus a 10% margin.
    """
    if not text or not isinstance(text, str):
        return 0

    if provider is Provider.DEEPSEEK:
        arabic_tokens = math.ceil(len(_ARABIC_CHARS.findall(text)) / 4)
        english_tokens = math.ceil(len(_ENGLISH_WORDS.findall(text)) * 1.3)
        number_tokens = len(_NUMBERS.findall(text))
        return arabic_tokens + english_tokens + number_tokens

    return math.ceil((len(text) / 3.5) * 1.1)


class UsageTracker:
    """
    Maintains the four rate-limit windows of each binding.

    The tracker mutates `binding.usage` in place; callers that need atomicity
    against concurrent selection hold the binding's lock around the call.
    After every mutation the optional `on_change` hook is awaited so the
    owner can persist the new state.
    """

    def __init__(
        self,
        model_limits: Optional[ModelLimits] = None,
        clock: Callable[[], float] = time.time,
        safety_margin: float = 1.0,
        on_change: Optional[ChangeHook] = None,
    ):
        self.model_limits = model_limits or ModelLimits()
        self.safety_margin = safety_margin
        self._clock = clock
        self._on_change = on_change

    async def _changed(self, persist: bool) -> None:
        if persist and self._on_change is not None:
            await self._on_change()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def record_usage(
        self, binding: ModelBinding, tokens: int = 0, persist: bool = True
    ) -> UsageStatus:
        """
        Record one completed request and its token cost.

        Args:
            binding: The binding that served the request
            tokens: Tokens consumed (prompt + completion). Negative values count as 0.
            persist: Await the change hook afterwards

        Returns:
            Exhaustion state of the binding after the update
        """
        now = self._clock()
        usage = binding.usage
        for kind in (WindowKind.RPM, WindowKind.RPH, WindowKind.RPD):
            usage.window(kind).add(1, now)
        usage.tpm.add(max(0, int(tokens or 0)), now)

        status = self.status(binding)
        if status.exhausted and usage.exhausted_at is None:
            usage.exhausted_at = now
        await self._changed(persist)
        return status

    async def mark_exhausted_now(
        self, binding: ModelBinding, window: WindowKind = WindowKind.RPM, persist: bool = True
    ) -> None:
        """
        Force a window to its limit, e.g. when the provider answered 429
        before our own counters said so. The window rolls on its normal
        schedule; if it had not started it starts now.
        """
        now = self._clock()
        target = binding.usage.window(window)
        target.roll(now)
        if target.window_start is None:
            target.window_start = now
        if target.limit > 0:
            target.used = max(target.used, target.limit)
        else:
            # No documented limit; the exclusion ledger carries the backoff.
            lib_logger.debug(
                f"Binding {binding.id} ({binding.model_name}) has no {window.value} limit to exhaust"
            )
        binding.usage.exhausted_at = now
        await self._changed(persist)

    async def repair(self, binding: ModelBinding, persist: bool = True) -> bool:
        """
        Replace a corrupt usage document with the default one for the model.

        Returns:
            True if the binding was corrupt and has been rewritten
        """
        if not binding.usage_corrupt:
            return False
        binding.usage = UsageDocument.fresh(self.model_limits.for_model(binding.model_name))
        binding.usage_corrupt = False
        lib_logger.info(
            f"Repaired usage document of binding {binding.id} ({binding.model_name})"
        )
        await self._changed(persist)
        return True

    async def clear_stale_exhausted_flag(
        self, binding: ModelBinding, max_age: float, persist: bool = True
    ) -> bool:
        stamp = binding.usage.exhausted_at
        if stamp is None or self._clock() - stamp < max_age:
            return False
        binding.usage.exhausted_at = None
        await self._changed(persist)
        return True

    async def roll_expired(self, binding: ModelBinding, persist: bool = True) -> int:
        """Reset every elapsed window. Returns the number of windows rolled."""
        now = self._clock()
        rolled = sum(1 for w in binding.usage.windows() if w.roll(now))
        if rolled:
            await self._changed(persist)
        return rolled

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_exhausted(
        self,
        binding: ModelBinding,
        predicted_tokens: int = 0,
        pending_requests: int = 0,
        pending_tokens: int = 0,
    ) -> bool:
        """
        True if any live window is at its limit.

        `pending_requests` are admitted calls that have not reported back yet
        and count against the request windows; `pending_tokens` are their
        predicted token costs. `predicted_tokens` must fit inside the TPM
        window on top of both.
        """
        return bool(
            self.exhausted_windows(binding, predicted_tokens, pending_requests, pending_tokens)
        )

    def exhausted_windows(
        self,
        binding: ModelBinding,
        predicted_tokens: int = 0,
        pending_requests: int = 0,
        pending_tokens: int = 0,
    ) -> List[WindowKind]:
        now = self._clock()
        exhausted = []
        for w in binding.usage.windows():
            if w.kind.counts_tokens:
                full = w.is_exhausted(
                    now,
                    pending=pending_tokens,
                    predicted=predicted_tokens,
                    safety_margin=self.safety_margin,
                )
            else:
                full = w.is_exhausted(
                    now, pending=pending_requests, safety_margin=self.safety_margin
                )
            if full:
                exhausted.append(w.kind)
        return exhausted

    def status(self, binding: ModelBinding) -> UsageStatus:
        windows = self.exhausted_windows(binding)
        return UsageStatus(exhausted=bool(windows), exhausted_windows=windows)

    def time_until_available(self, binding: ModelBinding) -> float:
        """Seconds until every currently exhausted window has rolled. 0 if none is."""
        now = self._clock()
        wait = 0.0
        for kind in self.exhausted_windows(binding):
            resets_at = binding.usage.window(kind).resets_at()
            if resets_at is not None:
                wait = max(wait, resets_at - now)
        return max(0.0, wait)
