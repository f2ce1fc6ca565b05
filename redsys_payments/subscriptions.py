import calendar
import datetime as dt
from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from redsys_payments.models import Subscription, SubscriptionStatus, utcnow

logger = structlog.get_logger()


def add_interval(moment: dt.datetime, interval: str) -> dt.datetime:
    """Advance by one calendar month or year, clamping to the month's last day."""
    months = 12 if interval == "annual" else 1
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class DunningPolicy:
    """How many consecutive failed renewals cancel a subscription.

    ``None`` keeps failing subscriptions active indefinitely.
    """

    max_consecutive_failures: Optional[int] = None

    def should_cancel(self, failures: int) -> bool:
        return self.max_consecutive_failures is not None and failures >= self.max_consecutive_failures


class SubscriptionStore:
    def __init__(self, db: Session):
        self.db = db

    def due_for_renewal(self, now: dt.datetime, limit: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.next_renewal_at <= now,
            )
            .order_by(Subscription.next_renewal_at.asc())
            .limit(limit)
            .all()
        )

    def record_renewal(
        self,
        sub: Subscription,
        gateway_order: str,
        cof_transaction_id: Optional[str] = None,
    ) -> Subscription:
        previous_end = sub.current_period_end
        new_end = add_interval(previous_end, sub.interval)

        sub.current_period_start = previous_end
        sub.current_period_end = new_end
        sub.next_renewal_at = new_end
        sub.last_gateway_order = gateway_order
        sub.renewal_failures = 0
        if cof_transaction_id and cof_transaction_id != sub.cof_transaction_id:
            sub.cof_transaction_id = cof_transaction_id
        sub.updated_at = utcnow()
        self.db.commit()

        logger.info(
            "subscription_renewed",
            subscription_id=sub.id,
            gateway_order=gateway_order,
            current_period_end=new_end.isoformat(),
        )
        return sub

    def record_failure(self, sub: Subscription, policy: DunningPolicy) -> Subscription:
        sub.renewal_failures = (sub.renewal_failures or 0) + 1
        if policy.should_cancel(sub.renewal_failures):
            sub.status = SubscriptionStatus.CANCELED.value
            logger.warning(
                "subscription_canceled_after_failures",
                subscription_id=sub.id,
                failures=sub.renewal_failures,
            )
        else:
            logger.warning(
                "subscription_renewal_failed",
                subscription_id=sub.id,
                failures=sub.renewal_failures,
            )
        sub.updated_at = utcnow()
        self.db.commit()
        return sub


class SubscriptionExpirer:
    def __init__(self, db: Session):
        self.db = db

    def expire_canceled(self, now: Optional[dt.datetime] = None, dry_run: bool = False) -> int:
        """Flip canceled subscriptions past their period end to expired."""
        now = now or utcnow()
        criteria = (
            Subscription.status == SubscriptionStatus.CANCELED.value,
            Subscription.current_period_end <= now,
        )

        if dry_run:
            return self.db.query(func.count(Subscription.id)).filter(*criteria).scalar()

        result = self.db.execute(
            update(Subscription)
            .where(*criteria)
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount:
            logger.info("subscriptions_expired", count=result.rowcount)
        return result.rowcount
