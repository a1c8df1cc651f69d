"""
Downgrade policy for failed payments

Single strike: a failed payment during a trial, or the first failed
attempt of an invoice, downgrades the user to the free tier at once.
Later attempts only mark the subscription past due.
"""
from typing import Optional, Union

from models import SubscriptionStatus


def should_downgrade_immediately(
    status: Union[SubscriptionStatus, str, None], attempt_count: Optional[int]
) -> bool:
    """
    Decide whether a failed payment downgrades the user right away

    Args:
        status: Upstream subscription status
        attempt_count: Invoice payment attempt number; missing or zero counts as 1

    Returns:
        True for a trialing subscription or a first attempt
    """
    if str(getattr(status, "value", status)) == SubscriptionStatus.TRIALING.value:
        return True
    return (attempt_count or 1) == 1
