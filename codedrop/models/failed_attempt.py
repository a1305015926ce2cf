from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime
from codedrop.database import Base


class FailedAttempt(Base):
    __tablename__ = "failed_attempts"

    id = Column(Integer, primary_key=True, index=True)
    ip = Column(String(64), unique=True, index=True, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    timeout_until = Column(DateTime(timezone=True), nullable=True)
    # Seconds; doubles on every lockout and survives resets
    timeout_duration = Column(Integer, default=0, nullable=False)
