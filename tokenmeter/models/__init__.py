"""Database models for the token metering engine."""

from .base import Base
from .directory import Provider, Model, ModelQuota
from .usage import TokenConsumptionStats

__all__ = ["Base", "Provider", "Model", "ModelQuota", "TokenConsumptionStats"]
