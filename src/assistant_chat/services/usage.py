"""Append-only ledger of token consumption per completed exchange."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from ..domain.models import UsageLogEntry
from ..repositories.base import Repository

logger = structlog.get_logger()

# Informational billing estimate, not enforced
COST_PER_MILLION_TOKENS = 0.60


def estimate_cost(tokens_used: int) -> float:
    return tokens_used / 1_000_000 * COST_PER_MILLION_TOKENS


@dataclass(frozen=True)
class UsageSummary:
    exchanges: int
    tokens_used: int
    cost_estimate: float


class UsageLedger:
    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def record_exchange(
        self, user_id: UUID, message_id: UUID, tokens_used: int
    ) -> UsageLogEntry:
        """Append the entry for one finalized assistant message."""
        entry = await self.repository.append_usage_log(
            UsageLogEntry(
                user_id=user_id,
                message_id=message_id,
                tokens_used=tokens_used,
                cost_estimate=estimate_cost(tokens_used),
            )
        )
        logger.info(
            "usage_logged",
            user_id=str(user_id),
            message_id=str(message_id),
            tokens_used=tokens_used,
            cost_estimate=entry.cost_estimate,
        )
        return entry

    async def summarize(
        self, user_id: Optional[UUID] = None, since: Optional[datetime] = None
    ) -> UsageSummary:
        """Totals over the ledger, optionally for one user and/or a time window."""
        entries = await self.repository.list_usage_logs(user_id)
        if since is not None:
            entries = [entry for entry in entries if entry.created_at >= since]
        tokens = sum(entry.tokens_used for entry in entries)
        return UsageSummary(
            exchanges=len(entries),
            tokens_used=tokens,
            cost_estimate=sum(entry.cost_estimate for entry in entries),
        )
