"""
Plan Capability Table.

One table answers every "may this merchant do X" question. The decision
engine, the usage guard and the read-only plan endpoint all consume it.
"""

from types import MappingProxyType

from dmtobuy.models.api import PlanTier
from dmtobuy.models.domain import Plan

PLANS: MappingProxyType[PlanTier, Plan] = MappingProxyType(
    {
        PlanTier.FREE: Plan(
            tier=PlanTier.FREE,
            monthly_message_cap=25,
            comment_automation=False,
            conversational_mode=False,
            brand_voice=False,
            follow_up=False,
        ),
        PlanTier.GROWTH: Plan(
            tier=PlanTier.GROWTH,
            monthly_message_cap=500,
            comment_automation=True,
            conversational_mode=True,
            brand_voice=True,
            follow_up=False,
        ),
        PlanTier.PRO: Plan(
            tier=PlanTier.PRO,
            monthly_message_cap=50000,
            comment_automation=True,
            conversational_mode=True,
            brand_voice=True,
            follow_up=True,
        ),
    }
)


def get_plan(tier: PlanTier | str | None) -> Plan:
    """Look up a plan. Unknown or missing tier names resolve to FREE."""
    if isinstance(tier, PlanTier):
        return PLANS[tier]
    try:
        return PLANS[PlanTier((tier or "").upper())]
    except ValueError:
        return PLANS[PlanTier.FREE]
