"""Per-tenant RAG configuration."""
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from kb_engine.exceptions import ValidationError
from kb_engine.services.retrieval_cache import RetrievalCache
from kb_engine.utils.logger import logger


class TenantRagSettings(BaseModel):
    """Read-only retrieval and answering tunables for one tenant."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    chat_model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    max_context_tokens: int = Field(default=4000, gt=0)
    embedding_model: str = "text-embedding-3-small"
    retriever_top_k: Optional[int] = Field(default=None, ge=1, le=50)
    overfetch: int = Field(default=50, ge=1)
    hybrid_enabled: bool = True
    rerank_enabled: bool = False
    rerank_window: int = Field(default=20, ge=1)
    rerank_trigger: float = Field(default=0.6, ge=0.0, le=1.0)
    doc_cap: int = Field(default=2, ge=1)
    default_allowed_roles: List[str] = Field(default_factory=lambda: ["support", "operations", "admin"])
    retrieval_timeout_ms: int = Field(default=5000, gt=0)


class TenantSettingsProvider:
    """Serves TenantRagSettings by tenant; any change invalidates cached retrievals."""

    def __init__(
        self,
        defaults: Optional[TenantRagSettings] = None,
        cache: Optional[RetrievalCache] = None,
        overrides_path: Optional[str] = None,
    ):
        """
        Initialize provider.

        Args:
            defaults: Settings applied to every tenant without overrides
            cache: Retrieval cache to invalidate when settings change
            overrides_path: Optional JSON file mapping tenant id to setting overrides
        """
        self.defaults = defaults or TenantRagSettings()
        self.cache = cache
        self.overrides_path = overrides_path
        self._settings: Dict[str, TenantRagSettings] = {}
        if overrides_path:
            self.reload()

    def get(self, tenant_id: str) -> TenantRagSettings:
        return self._settings.get(tenant_id, self.defaults)

    def update(self, tenant_id: str, **changes: Any) -> TenantRagSettings:
        """
        Apply setting changes for one tenant.

        Raises:
            ValidationError: If a value is out of range
        """
        merged = {**self.get(tenant_id).model_dump(), **changes}
        try:
            updated = TenantRagSettings(**merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid tenant settings: {e.errors()[0]['msg']}")
        self._settings[tenant_id] = updated
        if self.cache is not None:
            removed = self.cache.invalidate_tenant(tenant_id)
            logger.info(
                f"Tenant settings updated; dropped {removed} cached results",
                extra={"tenant_id": tenant_id},
            )
        return updated

    def reload(self) -> None:
        """Re-read the overrides file and clear the whole retrieval cache."""
        settings: Dict[str, TenantRagSettings] = {}
        if self.overrides_path and Path(self.overrides_path).exists():
            raw = json.loads(Path(self.overrides_path).read_text(encoding="utf-8"))
            base = self.defaults.model_dump()
            for tenant_id, overrides in raw.items():
                settings[tenant_id] = TenantRagSettings(**{**base, **overrides})
            logger.info(f"Loaded RAG settings overrides for {len(settings)} tenants")
        self._settings = settings
        if self.cache is not None:
            self.cache.clear()
