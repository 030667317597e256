import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from clinic_scheduler.core.timeutils import utcnow
from clinic_scheduler.models.promotion import DiscountType, Promotion, PromotionService

logger = logging.getLogger(__name__)

ACTIVE_PROMOTION_STATUS = 'Active'


@dataclass(frozen=True)
class PriceQuote:
    original_price: int
    final_price: int
    discount_amount: int
    promotion_id: int | None = None


def discounted_price(base_price: int, discount_type: str, discount_value: int) -> int:
    if discount_type == DiscountType.PERCENT:
        discount = base_price * min(max(discount_value, 0), 100) // 100
    else:
        discount = min(max(discount_value, 0), base_price)
    return base_price - discount


class PromotionResolver:
    """Picks the cheapest currently running promotion linked to a service."""

    def resolve(self, db: Session, service_id: int, base_price: int, now: datetime | None = None) -> PriceQuote:
        now = now or utcnow()
        promotions = (
            db.query(Promotion)
            .join(PromotionService, PromotionService.promotion_id == Promotion.id)
            .filter(
                PromotionService.service_id == service_id,
                Promotion.status == ACTIVE_PROMOTION_STATUS,
                Promotion.start_date <= now,
                Promotion.end_date >= now,
            )
            .all()
        )

        best = PriceQuote(original_price=base_price, final_price=base_price, discount_amount=0)
        for promotion in promotions:
            final_price = discounted_price(base_price, promotion.discount_type, promotion.discount_value)
            if final_price < best.final_price:
                best = PriceQuote(
                    original_price=base_price,
                    final_price=final_price,
                    discount_amount=base_price - final_price,
                    promotion_id=promotion.id,
                )

        if best.promotion_id is not None:
            logger.debug('Service %s priced at %s with promotion %s', service_id, best.final_price, best.promotion_id)
        return best
