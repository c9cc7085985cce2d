from typing import List, Optional

from sqlalchemy import ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenmeter.models.base import ActiveMixin, Base, TimestampMixin, UUIDMixin


class Provider(Base, UUIDMixin, TimestampMixin, ActiveMixin):
    __tablename__ = "providers"

    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    base_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    aliases: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)

    models = relationship("Model", back_populates="provider")


class Model(Base, UUIDMixin, TimestampMixin, ActiveMixin):
    __tablename__ = "models"
    __table_args__ = (
        UniqueConstraint("provider_id", "model_name", name="models_provider_model_unique"),
    )

    provider_id: Mapped[str] = mapped_column(String(36), ForeignKey("providers.id"), nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    provider = relationship("Provider", back_populates="models")
    quota = relationship("ModelQuota", back_populates="model", uselist=False)


class ModelQuota(Base, UUIDMixin, TimestampMixin, ActiveMixin):
    __tablename__ = "model_quotas"

    # One quota row per model; NULL limits mean "unlimited" on that dimension
    model_id: Mapped[str] = mapped_column(String(36), ForeignKey("models.id"), unique=True, nullable=False)
    max_tokens_per_message: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_tokens_per_minute: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_tokens_per_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    model = relationship("Model", back_populates="quota")
