from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, UniqueConstraint

from tokenmeter.models.base import Base, generate_uuid, utcnow


class TokenConsumptionStats(Base):
    """Cumulative token usage per model and window period, for long-horizon reporting."""

    __tablename__ = "token_consumption_stats"
    __table_args__ = (
        UniqueConstraint(
            "provider_id", "model_id", "window_start", "window_type",
            name="token_stats_model_window_unique",
        ),
        CheckConstraint(
            "window_type IN ('minute', 'hour', 'day')",
            name="token_stats_window_type_check",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)

    provider_id = Column(String(36), index=True, nullable=False)
    model_id = Column(String(36), index=True, nullable=False)

    window_type = Column(String, nullable=False)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)

    prompt_tokens = Column(Integer, default=0, nullable=False)
    completion_tokens = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    request_count = Column(Integer, default=0, nullable=False)

    last_updated = Column(DateTime(timezone=True), default=utcnow, nullable=False)
