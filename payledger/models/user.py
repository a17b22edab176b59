from sqlalchemy import Column, Integer, BigInteger, String, DateTime
from payledger.db.base_class import Base

FREE_PLAN = "Free"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=True)
    plan = Column(String(64), nullable=False, default=FREE_PLAN)
    plan_expiry = Column(DateTime, nullable=True)
