"""Delivery throttle: decides per fragment whether to send, edit or hold the visible answer."""

from __future__ import annotations

from relay.core.events import (
    AggregationState,
    DeliveryAction,
    DeliveryDecision,
    Fragment,
)

DEFAULT_MIN_INTERVAL = 0.5


class DeliveryThrottle:
    """Wall-clock gate between visible updates. Never sleeps; the caller supplies ``now``.

    Decisions always carry the full accumulated text, so the outbound side only
    has to replace what it displays. Deferred fragments are not lost: they are
    already part of ``state.accumulated`` and ride along with the next edit.
    """

    def __init__(self, min_interval: float = DEFAULT_MIN_INTERVAL) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval

    def _elapsed(self, state: AggregationState, now: float) -> bool:
        if state.last_delivery_time is None:
            return True
        return now - state.last_delivery_time >= self.min_interval

    def decide(
        self,
        state: AggregationState,
        now: float,
        fragment: Fragment | None = None,
    ) -> DeliveryDecision:
        if fragment is not None and not fragment.text:
            return DeliveryDecision(action=DeliveryAction.NOOP)
        if not state.accumulated:
            return DeliveryDecision(action=DeliveryAction.NOOP)
        if state.delivered_handle is None:
            # First fragment, or a retry after a failed emit once the interval has passed.
            if not state.has_delivered or self._elapsed(state, now):
                return DeliveryDecision(action=DeliveryAction.EMIT, text=state.accumulated)
            return DeliveryDecision(action=DeliveryAction.DEFER)
        if self._elapsed(state, now):
            return DeliveryDecision(action=DeliveryAction.EDIT, text=state.accumulated)
        return DeliveryDecision(action=DeliveryAction.DEFER)

    def record_delivery(
        self,
        state: AggregationState,
        now: float,
        handle: int | None = None,
    ) -> None:
        """Called after every emit/edit attempt, failed ones included, to avoid retry storms."""
        state.last_delivery_time = now
        state.has_delivered = True
        if handle is not None:
            state.delivered_handle = handle
