from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime
from ..database import Base


class SequenceCounter(Base):
    """
    Registration counter, one row per issuing period (YYYYMM).

    Only ever advanced by a single upsert-and-return statement.
    """
    __tablename__ = "sequence_counters"

    period_key = Column(String(6), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<SequenceCounter {self.period_key}={self.value}>"
