from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from nsforecast.core.db import Base
from nsforecast.models.domain import Observation


class ObservationRecord(Base):
    __tablename__ = "observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, comment="Nightscout _id or HealthKit UUID")
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True, comment="Naive UTC")
    value_mmol: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default="")

    def to_domain(self) -> Observation:
        return Observation(
            id=self.external_id,
            timestamp=self.timestamp.replace(tzinfo=timezone.utc),
            value=self.value_mmol,
            source=self.source or "",
        )
