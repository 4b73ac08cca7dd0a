"""
Live usage recorder.

Records usage events as agent turns complete, with both costs attached.
"""

import logging
from typing import Optional

from usage_reconciler.core.billing import BillingResolver
from usage_reconciler.core.clock import Clock, SystemClock, now_ms
from usage_reconciler.core.pricing import PRICING_TABLE, BillingMode, PricingTable, calculate_dual_cost
from usage_reconciler.core.token_counter import TokenUsage
from usage_reconciler.storage.models import EventSource, UsageEvent
from usage_reconciler.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

CLAUDE_AGENT_TYPES = frozenset({"claude-code"})


class LiveUsageRecorder:
    """Records live-captured usage events into the event store.

    Claude agents get their billing mode resolved and their costs
    computed from the token counts. Other agents keep the cost they
    reported. Store failures are loud; nothing is dropped silently.
    """

    def __init__(
        self,
        repository: UsageRepository,
        billing_resolver: Optional[BillingResolver] = None,
        clock: Optional[Clock] = None,
        pricing_table: PricingTable = PRICING_TABLE,
    ):
        self.repository = repository
        self.billing_resolver = billing_resolver or BillingResolver()
        self.clock = clock or SystemClock()
        self.pricing_table = pricing_table

    def _is_local_model(self, model: str) -> bool:
        return (
            self.pricing_table.resolve_model_id(model) is None
            and not model.lower().startswith("claude")
        )

    def record(
        self,
        session_id: str,
        agent_type: str,
        start_time: int,
        usage: TokenUsage,
        model: Optional[str] = None,
        duration: int = 0,
        source: EventSource = EventSource.USER,
        uuid: Optional[str] = None,
        message_id: Optional[str] = None,
        project_path: Optional[str] = None,
        reported_cost_usd: Optional[float] = None,
    ) -> int:
        """Record one completed agent turn.

        Args:
            session_id: Agent session identifier (required)
            agent_type: Agent kind, e.g. ``claude-code`` (required)
            start_time: Turn start, epoch milliseconds
            usage: Token counts reported for the turn
            model: Model the agent reported, if known
            duration: Turn duration in milliseconds
            source: Whether the turn was user-initiated or automatic
            uuid: Transcript message uuid, if known
            message_id: Provider message id, if known
            project_path: Working directory of the session
            reported_cost_usd: Cost the agent itself reported

        Returns:
            Id of the stored event

        Raises:
            ValueError: If session_id or agent_type is missing
            StoreWriteError: If the event cannot be stored
        """
        if not session_id or not session_id.strip():
            raise ValueError("session_id is required and cannot be empty")
        if not agent_type or not agent_type.strip():
            raise ValueError("agent_type is required and cannot be empty")

        anthropic_cost = reported_cost_usd
        maestro_cost = reported_cost_usd
        billing_mode = BillingMode.API
        pricing_model = model

        if agent_type in CLAUDE_AGENT_TYPES:
            billing_mode = self.billing_resolver.resolve(agent_type)
            if model and self._is_local_model(model):
                billing_mode = BillingMode.FREE
                maestro_cost = 0.0
                anthropic_cost = reported_cost_usd or 0.0
                logger.debug("Model %s is not a Claude model, recording as free", model)
            elif model:
                costs = calculate_dual_cost(usage, model, billing_mode, self.pricing_table)
                anthropic_cost = reported_cost_usd if reported_cost_usd is not None else costs.anthropic_cost_usd
                maestro_cost = costs.maestro_cost_usd
                pricing_model = costs.pricing_model

        event = UsageEvent(
            session_id=session_id,
            agent_type=agent_type,
            source=source,
            start_time=start_time,
            duration=duration,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            uuid=uuid,
            anthropic_message_id=message_id,
            anthropic_model=model,
            anthropic_cost_usd=anthropic_cost,
            maestro_cost_usd=maestro_cost,
            maestro_billing_mode=billing_mode,
            maestro_pricing_model=pricing_model,
            maestro_calculated_at=now_ms(self.clock),
            project_path=project_path,
        )
        event_id = self.repository.insert(event)
        if anthropic_cost is not None and maestro_cost is not None and anthropic_cost != maestro_cost:
            logger.debug(
                "Recorded event #%s for %s: anthropic $%.6f, billed $%.6f (%s)",
                event_id, session_id, anthropic_cost, maestro_cost, billing_mode.value,
            )
        return event_id
