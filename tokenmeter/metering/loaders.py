"""
Directory loaders.

Each loader returns a ``DirectoryData`` bundle that ``ModelDirectory`` indexes
into a snapshot. The database loader is the system of record; the YAML loader
seeds development setups and the database itself (see ``tokenmeter seed``).
"""

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from tokenmeter.models import Model, ModelQuota, Provider
from .directory import DirectoryData, ModelRecord, ProviderRecord, QuotaRecord

logger = logging.getLogger(__name__)

# Namespace for ids derived from names when a seed file gives none
TOKENMETER_NAMESPACE = uuid.UUID("6f1c2a8e-3b7d-5e42-9a10-4c8d7e2f5b31")


def stable_id(*parts: str) -> str:
    """Deterministic UUIDv5 from name parts, so reseeding keeps ids stable."""
    return str(uuid.uuid5(TOKENMETER_NAMESPACE, "/".join(parts)))


class StaticDirectoryLoader:
    """Serves a fixed set of records (tests, fixtures, embedded setups)."""

    def __init__(
        self,
        providers: Iterable[ProviderRecord] = (),
        models: Iterable[ModelRecord] = (),
        quotas: Iterable[QuotaRecord] = (),
    ):
        self.data = DirectoryData(tuple(providers), tuple(models), tuple(quotas))

    def load(self) -> DirectoryData:
        return self.data


class DatabaseDirectoryLoader:
    """Reads providers, models and active quotas from the database."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            from tokenmeter.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

    def load(self) -> DirectoryData:
        db = self.session_factory()
        try:
            providers = [
                ProviderRecord(
                    id=row.id,
                    name=row.name,
                    display_name=row.display_name,
                    aliases=frozenset(row.aliases or ()),
                    is_active=row.is_active,
                    description=row.description,
                    base_url=row.base_url,
                )
                for row in db.query(Provider).filter(Provider.is_active.is_(True)).all()
            ]
            models = [
                ModelRecord(
                    id=row.id,
                    provider_id=row.provider_id,
                    model_name=row.model_name,
                    display_name=row.display_name,
                    is_active=row.is_active,
                    description=row.description,
                )
                for row in db.query(Model).filter(Model.is_active.is_(True)).all()
            ]
            active_model_ids = {m.id for m in models}
            quotas = [
                QuotaRecord(
                    id=row.id,
                    model_id=row.model_id,
                    max_tokens_per_message=row.max_tokens_per_message,
                    max_tokens_per_minute=row.max_tokens_per_minute,
                    max_tokens_per_day=row.max_tokens_per_day,
                    is_active=row.is_active,
                )
                for row in db.query(ModelQuota).filter(ModelQuota.is_active.is_(True)).all()
                if row.model_id in active_model_ids
            ]
        finally:
            db.close()

        # Models of inactive providers are dropped rather than failing validation
        provider_ids = {p.id for p in providers}
        models = [m for m in models if m.provider_id in provider_ids]
        model_ids = {m.id for m in models}
        quotas = [q for q in quotas if q.model_id in model_ids]

        return DirectoryData(tuple(providers), tuple(models), tuple(quotas))


class YamlDirectoryLoader:
    """
    Reads a directory seed file.

    Format:
        providers:
          - name: azure
            display_name: Azure OpenAI
            aliases: [azure-openai, azure-openai.chat]
            models:
              - name: gpt-4.1
                quota:
                  max_tokens_per_message: 32000
                  max_tokens_per_minute: 120000
                  max_tokens_per_day: 2000000

    ``id`` may be given on providers, models and quotas; otherwise stable ids
    are derived from the names.
    """

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> DirectoryData:
        with open(self.path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f) or {}
        return parse_directory_document(document, source=str(self.path))


def parse_directory_document(document: Dict[str, Any], source: str = "<document>") -> DirectoryData:
    """Convert a parsed seed document into directory records."""
    if not isinstance(document, dict):
        raise ValueError(f"{source}: expected a mapping at the top level")

    providers: List[ProviderRecord] = []
    models: List[ModelRecord] = []
    quotas: List[QuotaRecord] = []

    for entry in document.get("providers") or []:
        name = _required(entry, "name", source)
        provider_id = str(entry.get("id") or stable_id("provider", name))
        providers.append(ProviderRecord(
            id=provider_id,
            name=name,
            display_name=entry.get("display_name") or name,
            aliases=frozenset(str(a) for a in entry.get("aliases") or ()),
            is_active=bool(entry.get("is_active", True)),
            description=entry.get("description"),
            base_url=entry.get("base_url"),
        ))

        for model_entry in entry.get("models") or []:
            model_name = _required(model_entry, "name", source)
            model_id = str(model_entry.get("id") or stable_id("model", name, model_name))
            models.append(ModelRecord(
                id=model_id,
                provider_id=provider_id,
                model_name=model_name,
                display_name=model_entry.get("display_name"),
                is_active=bool(model_entry.get("is_active", True)),
                description=model_entry.get("description"),
            ))

            quota_entry: Optional[Dict[str, Any]] = model_entry.get("quota")
            if quota_entry:
                quotas.append(QuotaRecord(
                    id=str(quota_entry.get("id") or stable_id("quota", name, model_name)),
                    model_id=model_id,
                    max_tokens_per_message=quota_entry.get("max_tokens_per_message"),
                    max_tokens_per_minute=quota_entry.get("max_tokens_per_minute"),
                    max_tokens_per_day=quota_entry.get("max_tokens_per_day"),
                    is_active=bool(quota_entry.get("is_active", True)),
                ))

    logger.debug(f"Parsed {len(providers)} providers, {len(models)} models from {source}")
    return DirectoryData(tuple(providers), tuple(models), tuple(quotas))


def _required(entry: Dict[str, Any], field: str, source: str) -> str:
    value = entry.get(field) if isinstance(entry, dict) else None
    if not value or not str(value).strip():
        raise ValueError(f"{source}: entry is missing '{field}': {entry!r}")
    return str(value).strip()


def write_directory_to_database(data: DirectoryData, session_factory=None) -> Dict[str, int]:
    """
    Upsert directory records into the database (used by ``tokenmeter seed``).

    Returns counts of rows written per table.
    """
    if session_factory is None:
        from tokenmeter.database import SessionLocal
        session_factory = SessionLocal

    db = session_factory()
    try:
        for record in data.providers:
            row = db.get(Provider, record.id) or Provider(id=record.id)
            row.name = record.name
            row.display_name = record.display_name
            row.aliases = sorted(record.aliases)
            row.is_active = record.is_active
            row.description = record.description
            row.base_url = record.base_url
            db.add(row)
        db.flush()

        for record in data.models:
            row = db.get(Model, record.id) or Model(id=record.id)
            row.provider_id = record.provider_id
            row.model_name = record.model_name
            row.display_name = record.display_name
            row.is_active = record.is_active
            row.description = record.description
            db.add(row)
        db.flush()

        for record in data.quotas:
            row = db.query(ModelQuota).filter(ModelQuota.model_id == record.model_id).first()
            if row is None:
                row = ModelQuota(id=record.id, model_id=record.model_id)
            row.max_tokens_per_message = record.max_tokens_per_message
            row.max_tokens_per_minute = record.max_tokens_per_minute
            row.max_tokens_per_day = record.max_tokens_per_day
            row.is_active = record.is_active
            db.add(row)

        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return {"providers": len(data.providers), "models": len(data.models), "quotas": len(data.quotas)}
