import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from redsys_payments.models import ShopOrder, utcnow

logger = structlog.get_logger()


class OrderService:
    def __init__(self, db: Session):
        self.db = db

    def mark_paid(self, gateway_order: str) -> bool:
        result = self.db.execute(
            update(ShopOrder)
            .where(ShopOrder.gateway_order == gateway_order, ShopOrder.status != "paid")
            .values(status="paid", updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if not result.rowcount:
            logger.info("shop_order_not_updated", gateway_order=gateway_order)
            return False
        logger.info("shop_order_paid", gateway_order=gateway_order)
        return True
