"""Monthly token budget helpers.

Budget exhaustion is agent *state*, not an error: the agent is flagged
``budget_exhausted`` and skipped by the scheduler until the monthly reset.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from humanagent.metrics import llm_tokens_total
from humanagent.models.enums import AgentStatus
from humanagent.models.models import Agent
from humanagent.models.models import User
from humanagent.pricing import estimate_cost_usd

logger = logging.getLogger(__name__)

# Share of the budget after which a warning is logged once per run.
WARN_RATIO = 0.8


@dataclass(frozen=True)
class BudgetStatus:
    used: int
    budget: int  # 0 = unlimited

    @property
    def exhausted(self) -> bool:
        return self.budget > 0 and self.used >= self.budget

    @property
    def remaining(self) -> Optional[int]:
        if self.budget <= 0:
            return None
        return max(0, self.budget - self.used)


def check_token_budget(agent: Agent) -> BudgetStatus:
    status = BudgetStatus(used=int(agent.tokens_used_this_month or 0), budget=int(agent.monthly_token_budget or 0))
    if not status.exhausted and status.budget and status.used >= status.budget * WARN_RATIO:
        logger.warning(
            "agent %s at %d%% of monthly token budget (%d/%d)",
            agent.id,
            int(100 * status.used / status.budget),
            status.used,
            status.budget,
        )
    return status


def mark_budget_exhausted(db: Session, agent: Agent) -> None:
    status = check_token_budget(agent)
    agent.status = AgentStatus.BUDGET_EXHAUSTED
    agent.last_error = f"Monthly token budget exhausted ({status.used}/{status.budget}); runs resume after reset."
    db.commit()
    logger.info("agent %s paused: monthly token budget exhausted", agent.id)


def record_token_usage(db: Session, agent: Agent, tokens: int, *, model: Optional[str] = None) -> BudgetStatus:
    """Add *tokens* to the agent and owner monthly counters (atomic increments)."""
    if tokens <= 0:
        return check_token_budget(agent)

    db.execute(
        update(Agent)
        .where(Agent.id == agent.id)
        .values(tokens_used_this_month=Agent.tokens_used_this_month + tokens)
        .execution_options(synchronize_session=False)
    )
    db.execute(
        update(User)
        .where(User.id == agent.owner_id)
        .values(tokens_used_this_month=User.tokens_used_this_month + tokens)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(agent)
    llm_tokens_total.labels(model or "unknown").inc(tokens)

    status = check_token_budget(agent)
    if status.exhausted:
        mark_budget_exhausted(db, agent)
    return status


def run_cost_usd(model: Optional[str], prompt_tokens: int, completion_tokens: int) -> Optional[float]:
    return estimate_cost_usd(model, prompt_tokens, completion_tokens) if model else None


def reset_monthly_usage(db: Session) -> int:
    """Zero all monthly counters and lift budget pauses.  Returns agents resumed."""
    db.execute(update(User).values(tokens_used_this_month=0).execution_options(synchronize_session=False))
    db.execute(update(Agent).values(tokens_used_this_month=0).execution_options(synchronize_session=False))
    resumed = db.execute(
        update(Agent)
        .where(Agent.status == AgentStatus.BUDGET_EXHAUSTED)
        .values(status=AgentStatus.IDLE, last_error=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    db.expire_all()
    logger.info("monthly token usage reset; %d budget-paused agents resumed", resumed)
    return resumed


__all__ = [
    "BudgetStatus",
    "check_token_budget",
    "mark_budget_exhausted",
    "record_token_usage",
    "run_cost_usd",
    "reset_monthly_usage",
]
