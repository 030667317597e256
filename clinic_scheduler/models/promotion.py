"""Promotion definitions, read by the price resolver only."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from clinic_scheduler.database import Base


class DiscountType:
    PERCENT = 'Percent'
    FIX = 'Fix'


class Promotion(Base):
    __tablename__ = "promotions"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    discount_type = Column(String, nullable=False)
    discount_value = Column(Integer, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default='Active')


class PromotionService(Base):
    __tablename__ = "promotion_services"

    id = Column(Integer, primary_key=True)
    promotion_id = Column(Integer, ForeignKey("promotions.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False, index=True)
