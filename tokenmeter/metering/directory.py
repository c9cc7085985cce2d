"""
Provider/Model Directory

In-memory read model that resolves human-facing provider and model names
(including provider aliases and ``provider:model`` composite keys) to
canonical ids and the active quota for the model.

The directory holds a single immutable ``DirectorySnapshot``. Refreshes and
administrative edits build a new snapshot and swap the reference, so readers
never block and never observe a half-updated directory.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Tuple

from .types import UsageWindowKey

logger = logging.getLogger(__name__)

MODEL_KEY_SEPARATOR = ":"


class ResourceNotFoundError(LookupError):
    """Raised by ``resolve_or_raise`` when a provider or model cannot be resolved."""

    def __init__(self, resource_type: str, normalized: str, raw: Any):
        super().__init__(f"{resource_type.capitalize()} not found: {normalized}")
        self.resource_type = resource_type
        self.normalized = normalized
        self.raw = raw


@dataclass(frozen=True)
class ProviderRecord:
    id: str
    name: str
    display_name: str
    aliases: FrozenSet[str] = frozenset()
    is_active: bool = True
    description: Optional[str] = None
    base_url: Optional[str] = None


@dataclass(frozen=True)
class ModelRecord:
    id: str
    provider_id: str
    model_name: str
    display_name: Optional[str] = None
    is_active: bool = True
    description: Optional[str] = None


@dataclass(frozen=True)
class QuotaRecord:
    """
    Per-model limits. ``None`` (or 0, as stored by older rows) on a
    dimension means that dimension is unlimited.
    """

    id: str
    model_id: str
    max_tokens_per_message: Optional[int] = None
    max_tokens_per_minute: Optional[int] = None
    max_tokens_per_day: Optional[int] = None
    is_active: bool = True

    def __post_init__(self):
        for name in ("max_tokens_per_message", "max_tokens_per_minute", "max_tokens_per_day"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
                raise ValueError(f"{name} must be a non-negative integer or None, got {value!r}")
            if value == 0:
                object.__setattr__(self, name, None)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "model_id": self.model_id,
            "max_tokens_per_message": self.max_tokens_per_message,
            "max_tokens_per_minute": self.max_tokens_per_minute,
            "max_tokens_per_day": self.max_tokens_per_day,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class ResolvedIdentity:
    """Canonical identity of a provider/model pair plus its active quota."""

    provider: ProviderRecord
    model: ModelRecord
    quota: Optional[QuotaRecord] = None

    @property
    def provider_id(self) -> str:
        return self.provider.id

    @property
    def model_id(self) -> str:
        return self.model.id

    @property
    def provider_name(self) -> str:
        return self.provider.name

    @property
    def model_name(self) -> str:
        return self.model.model_name

    @property
    def key(self) -> str:
        return f"{self.provider.id}:{self.model.id}"

    def window_keys(self) -> Tuple[UsageWindowKey, ...]:
        return UsageWindowKey.for_model(self.provider.id, self.model.id)


@dataclass(frozen=True)
class DirectoryData:
    """Raw records produced by a loader, before indexing."""

    providers: Tuple[ProviderRecord, ...] = ()
    models: Tuple[ModelRecord, ...] = ()
    quotas: Tuple[QuotaRecord, ...] = ()


@dataclass(frozen=True)
class DirectorySnapshot:
    """Immutable, fully indexed view of the directory."""

    providers_by_id: Mapping[str, ProviderRecord]
    provider_ids_by_name: Mapping[str, str]
    models_by_id: Mapping[str, ModelRecord]
    models_by_provider_and_name: Mapping[Tuple[str, str], ModelRecord]
    quotas_by_model_id: Mapping[str, QuotaRecord]
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def empty(cls) -> "DirectorySnapshot":
        return cls.build(DirectoryData())

    @classmethod
    def build(cls, data: DirectoryData) -> "DirectorySnapshot":
        """
        Index loader output into a snapshot.

        Raises:
            ValueError: On dangling model references, duplicate model names
                within a provider, or more than one active quota per model.
        """
        providers_by_id: Dict[str, ProviderRecord] = {}
        for provider in data.providers:
            if provider.id in providers_by_id:
                raise ValueError(f"Duplicate provider id: {provider.id}")
            providers_by_id[provider.id] = provider

        # Canonical names take precedence over aliases
        provider_ids_by_name: Dict[str, str] = {}
        for provider in providers_by_id.values():
            if provider.name in provider_ids_by_name:
                raise ValueError(f"Duplicate provider name: {provider.name}")
            provider_ids_by_name[provider.name] = provider.id
        for provider in providers_by_id.values():
            for alias in sorted(provider.aliases):
                existing = provider_ids_by_name.get(alias)
                if existing is None:
                    provider_ids_by_name[alias] = provider.id
                elif existing != provider.id:
                    logger.warning(
                        f"Provider alias '{alias}' of {provider.name} already maps to {existing}; ignoring"
                    )

        models_by_id: Dict[str, ModelRecord] = {}
        models_by_provider_and_name: Dict[Tuple[str, str], ModelRecord] = {}
        for model in data.models:
            if model.provider_id not in providers_by_id:
                raise ValueError(f"Model {model.model_name} references unknown provider {model.provider_id}")
            name_key = (model.provider_id, model.model_name)
            if name_key in models_by_provider_and_name:
                raise ValueError(f"Duplicate model name {model.model_name} for provider {model.provider_id}")
            models_by_id[model.id] = model
            models_by_provider_and_name[name_key] = model

        quotas_by_model_id: Dict[str, QuotaRecord] = {}
        for quota in data.quotas:
            if not quota.is_active:
                continue
            if quota.model_id not in models_by_id:
                raise ValueError(f"Quota {quota.id} references unknown model {quota.model_id}")
            if quota.model_id in quotas_by_model_id:
                raise ValueError(f"More than one active quota for model {quota.model_id}")
            quotas_by_model_id[quota.model_id] = quota

        return cls(
            providers_by_id=MappingProxyType(providers_by_id),
            provider_ids_by_name=MappingProxyType(provider_ids_by_name),
            models_by_id=MappingProxyType(models_by_id),
            models_by_provider_and_name=MappingProxyType(models_by_provider_and_name),
            quotas_by_model_id=MappingProxyType(quotas_by_model_id),
        )

    def to_data(self) -> DirectoryData:
        return DirectoryData(
            providers=tuple(self.providers_by_id.values()),
            models=tuple(self.models_by_id.values()),
            quotas=tuple(self.quotas_by_model_id.values()),
        )


class DirectoryLoader(Protocol):
    """Source of directory records (database, YAML file, static fixtures)."""

    def load(self) -> DirectoryData:
        ...


def parse_model_key(provider_or_composite: str, model_name: Optional[str] = None) -> Tuple[str, str]:
    """
    Split a metering identity into (provider, model).

    ``"azure:gpt-4.1"`` is split on the first separator and ``model_name`` is
    ignored; otherwise both arguments are used. Both parts are trimmed; either
    may come back empty, which callers treat as unresolvable.
    """
    raw = (provider_or_composite or "").strip()
    if MODEL_KEY_SEPARATOR in raw:
        provider, model = raw.split(MODEL_KEY_SEPARATOR, 1)
        return provider.strip(), model.strip()
    return raw, (model_name or "").strip()


class ModelDirectory:
    """
    Resolves provider/model names to canonical records and quotas.

    Usage:
        directory = ModelDirectory(loader=YamlDirectoryLoader("directory.yaml"))
        directory.refresh()
        identity = directory.resolve("azure:gpt-4.1")
    """

    def __init__(self, loader: Optional[DirectoryLoader] = None, snapshot: Optional[DirectorySnapshot] = None):
        self.loader = loader
        self._snapshot = snapshot or DirectorySnapshot.empty()
        self._write_lock = threading.Lock()
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._initialized = snapshot is not None

    @property
    def snapshot(self) -> DirectorySnapshot:
        return self._snapshot

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def provider(self, id_or_name: str, snapshot: Optional[DirectorySnapshot] = None) -> Optional[ProviderRecord]:
        """Find an active provider by canonical name, alias or id."""
        snap = snapshot or self._snapshot
        provider_id = snap.provider_ids_by_name.get(id_or_name, id_or_name)
        record = snap.providers_by_id.get(provider_id)
        if record is None or not record.is_active:
            return None
        return record

    def model(self, model_id: str) -> Optional[ModelRecord]:
        record = self._snapshot.models_by_id.get(model_id)
        return record if record is not None and record.is_active else None

    def quota_for(self, model_id: str) -> Optional[QuotaRecord]:
        return self._snapshot.quotas_by_model_id.get(model_id)

    def models_for_provider(self, provider: str) -> List[ModelRecord]:
        snap = self._snapshot
        record = self.provider(provider, snap)
        if record is None:
            return []
        return sorted(
            (m for m in snap.models_by_id.values() if m.provider_id == record.id and m.is_active),
            key=lambda m: m.model_name,
        )

    def resolve(self, provider_or_composite: str, model_name: Optional[str] = None) -> Optional[ResolvedIdentity]:
        """
        Resolve a provider/model pair to its canonical identity.

        Returns None (never raises) for unknown or inactive providers and models.
        """
        snap = self._snapshot
        provider_name, parsed_model = parse_model_key(provider_or_composite, model_name)
        if not provider_name or not parsed_model:
            logger.debug(f"Unresolvable model key: {provider_or_composite!r}, {model_name!r}")
            return None

        provider = self.provider(provider_name, snap)
        if provider is None:
            logger.debug(f"Unknown provider '{provider_name}'")
            return None

        model = snap.models_by_provider_and_name.get((provider.id, parsed_model))
        if model is None:
            # Callers occasionally pass the canonical model id instead of its name
            candidate = snap.models_by_id.get(parsed_model)
            model = candidate if candidate is not None and candidate.provider_id == provider.id else None
        if model is None or not model.is_active:
            logger.debug(f"Unknown model '{parsed_model}' for provider '{provider.name}'")
            return None

        return ResolvedIdentity(provider, model, snap.quotas_by_model_id.get(model.id))

    def resolve_or_raise(self, provider_or_composite: str, model_name: Optional[str] = None) -> ResolvedIdentity:
        identity = self.resolve(provider_or_composite, model_name)
        if identity is not None:
            return identity

        provider_name, parsed_model = parse_model_key(provider_or_composite, model_name)
        raw = {"provider_or_composite": provider_or_composite, "model_name": model_name}
        if self.provider(provider_name) is None:
            raise ResourceNotFoundError("provider", provider_name, raw)
        raise ResourceNotFoundError("model", f"{provider_name}:{parsed_model}", raw)

    def contains(self, provider_or_composite: str, model_name: Optional[str] = None) -> bool:
        return self.resolve(provider_or_composite, model_name) is not None

    # ------------------------------------------------------------------
    # Mutation (atomic snapshot swaps)
    # ------------------------------------------------------------------

    def replace_all(
        self,
        providers: Iterable[ProviderRecord],
        models: Iterable[ModelRecord],
        quotas: Iterable[QuotaRecord] = (),
    ) -> DirectorySnapshot:
        """Replace every record at once. Validation errors leave the current snapshot untouched."""
        snapshot = DirectorySnapshot.build(DirectoryData(tuple(providers), tuple(models), tuple(quotas)))
        with self._write_lock:
            self._swap(snapshot)
        return snapshot

    def add_quota_to_model(
        self,
        model_id: str,
        max_tokens_per_message: Optional[int] = None,
        max_tokens_per_minute: Optional[int] = None,
        max_tokens_per_day: Optional[int] = None,
        quota_id: Optional[str] = None,
    ) -> QuotaRecord:
        """
        Install (or replace) the active quota for a model.

        The edit lives in the in-memory snapshot only; the next ``refresh``
        replaces it with whatever the loader returns.
        """
        with self._write_lock:
            current = self._snapshot
            if model_id not in current.models_by_id:
                raise ResourceNotFoundError("model", model_id, model_id)

            existing = current.quotas_by_model_id.get(model_id)
            quota = QuotaRecord(
                id=quota_id or (existing.id if existing else str(uuid.uuid4())),
                model_id=model_id,
                max_tokens_per_message=max_tokens_per_message,
                max_tokens_per_minute=max_tokens_per_minute,
                max_tokens_per_day=max_tokens_per_day,
            )
            data = current.to_data()
            quotas = tuple(q for q in data.quotas if q.model_id != model_id) + (quota,)
            self._swap(DirectorySnapshot.build(replace(data, quotas=quotas)))

        logger.info(f"Quota updated for model {model_id}: {quota.as_dict()}")
        return quota

    def remove_quota_from_model(self, model_id: str) -> bool:
        with self._write_lock:
            current = self._snapshot
            if model_id not in current.quotas_by_model_id:
                return False
            data = current.to_data()
            quotas = tuple(q for q in data.quotas if q.model_id != model_id)
            self._swap(DirectorySnapshot.build(replace(data, quotas=quotas)))
        return True

    def _swap(self, snapshot: DirectorySnapshot) -> None:
        self._snapshot = snapshot
        self._initialized = True

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self) -> bool:
        """
        Reload from the configured loader.

        On any failure the last-known-good snapshot stays in place and False
        is returned; the error is logged, never raised.
        """
        if self.loader is None:
            logger.debug("Directory has no loader configured; refresh skipped")
            return False

        try:
            snapshot = DirectorySnapshot.build(self.loader.load())
        except Exception as e:
            logger.error(f"Directory refresh failed, keeping snapshot from {self._snapshot.loaded_at.isoformat()}: {e}")
            return False

        with self._write_lock:
            self._swap(snapshot)

        logger.info(
            f"Directory refreshed: {len(snapshot.providers_by_id)} providers, "
            f"{len(snapshot.models_by_id)} models, {len(snapshot.quotas_by_model_id)} quotas"
        )
        return True

    def start_auto_refresh(self, interval_seconds: float) -> None:
        """Refresh in a daemon thread every ``interval_seconds``."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self._refresh_thread is not None and self._refresh_thread.is_alive():
            return

        self._stop_refresh.clear()

        def _loop():
            while not self._stop_refresh.wait(interval_seconds):
                self.refresh()

        self._refresh_thread = threading.Thread(target=_loop, name="directory-refresh", daemon=True)
        self._refresh_thread.start()
        logger.info(f"Directory auto-refresh started (every {interval_seconds}s)")

    def stop_auto_refresh(self, timeout: Optional[float] = None) -> None:
        self._stop_refresh.set()
        if self._refresh_thread is not None:
            self._refresh_thread.join(timeout)
            self._refresh_thread = None
