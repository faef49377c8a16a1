"""
Rewards service for the loyalty platform.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import HTTPException
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ValidationError
from shared.logging import set_evaluation_context

from .policies.engine import PolicyEngine
from .policies.models import EvaluateRequest, EvaluateResponse, Policy
from .policies.registry import PolicyRegistry, PolicySource
from .sources import FilePolicySource, InMemoryPolicySource
from .persistence.postgres import PostgresPolicySource
from .cache.invalidation import PolicyChangeListener


class ReplayRequest(EvaluateRequest):
    """Re-run an evaluation against recorded policy versions."""
    policy_versions: Dict[str, int] = Field(..., description="policy_id -> version, from snapshot_versions")


class InvalidationResponse(BaseModel):
    invalidated_scopes: int


def build_policy_source(config: ServiceConfig) -> PolicySource:
    """Build the policy source named by configuration."""
    if config.policy_source == "memory":
        return InMemoryPolicySource()
    if config.policy_source == "file":
        if not config.policy_file:
            raise ValidationError("policy_file is required for the file policy source")
        return FilePolicySource(config.policy_file)
    if config.policy_source == "postgres":
        return PostgresPolicySource(config.postgres_dsn)
    raise ValidationError(f"Unknown policy source {config.policy_source!r}")


class RewardsService(BaseService):
    """Rewards service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, source: Optional[PolicySource] = None):
        super().__init__("rewards", 8020, config or get_config("rewards", 8020))

        self.source = source if source is not None else build_policy_source(self.config)
        self.registry = PolicyRegistry(
            self.source,
            ttl_seconds=self.config.policy_cache_ttl_seconds,
            fetch_timeout_seconds=self.config.policy_fetch_timeout_seconds,
            max_scopes=self.config.policy_cache_max_scopes,
            metrics=self.metrics
        )
        self.engine = PolicyEngine(
            self.registry,
            metrics=self.metrics,
            default_timeout=self.config.evaluation_timeout_seconds
        )
        self.listener: Optional[PolicyChangeListener] = None
        if self.config.enable_invalidation_listener:
            self.listener = PolicyChangeListener(
                self.config.redis_url,
                self.registry,
                self.config.invalidation_channel
            )

        self._setup_rewards_routes()

    def _setup_rewards_routes(self):
        """Set up rewards-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "rewards",
                "message": "Loyalty Platform - Rewards Policy Service",
                "version": "1.0.0",
                "capabilities": ["policy_evaluation", "stacking", "audit_replay", "cache_invalidation"]
            }

        @self.app.post("/rewards/evaluate", response_model=EvaluateResponse)
        async def evaluate(request: EvaluateRequest):
            """Evaluate a business event against the active reward policies."""
            set_evaluation_context(actor_id=request.actor_id, tenant_id=request.tenant_id)
            result = await self.engine.evaluate(request.to_context(), timeout=request.timeout_seconds)
            return EvaluateResponse.from_result(result, transaction_id=request.transaction_id)

        @self.app.post("/rewards/replay", response_model=EvaluateResponse)
        async def replay(request: ReplayRequest):
            """Replay an evaluation against the exact policy versions it used."""
            get_version = getattr(self.source, "get_policy_version", None)
            if get_version is None:
                raise HTTPException(status_code=501, detail="Policy source does not keep version history")

            policies: List[Policy] = []
            missing = []
            for policy_id, version in sorted(request.policy_versions.items()):
                policy = await get_version(policy_id, version)
                if policy is None:
                    missing.append(f"{policy_id}@{version}")
                else:
                    policies.append(policy)
            if missing:
                raise HTTPException(status_code=404, detail=f"Unknown policy versions: {', '.join(missing)}")

            policies.sort(key=lambda p: (-p.precedence, p.policy_id))
            result = self.engine.evaluate_snapshot(request.to_context(), policies)
            self.logger.info("Evaluation replayed", policies=len(policies), total=result.total)
            return EvaluateResponse.from_result(result, transaction_id=request.transaction_id)

        @self.app.post("/rewards/policies/{policy_id}/invalidate", response_model=InvalidationResponse)
        async def invalidate_policy(policy_id: str):
            """Expire cached scopes holding a policy."""
            return InvalidationResponse(invalidated_scopes=self.registry.invalidate(policy_id))

        @self.app.post("/rewards/cache/invalidate", response_model=InvalidationResponse)
        async def invalidate_cache():
            """Expire the whole policy cache."""
            return InvalidationResponse(invalidated_scopes=self.registry.invalidate_all())

        @self.app.get("/rewards/stats")
        async def get_stats():
            """Get rewards service statistics."""
            return {
                "registry": self.registry.get_stats(),
                "policy_source": type(self.source).__name__,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check rewards service dependencies."""
        dependencies = {}

        if isinstance(self.source, PostgresPolicySource):
            dependencies["postgres"] = "ok" if await self.source.health_check() else "error"

        if self.listener is not None:
            dependencies["redis"] = "ok" if await self.listener.health_check() else "error"

        return dependencies

    async def start(self):
        """Start rewards service components."""
        if isinstance(self.source, PostgresPolicySource):
            await self.source.start()
        if self.listener is not None:
            await self.listener.start()

        self.logger.info("Rewards service started", policy_source=type(self.source).__name__)

    async def stop(self):
        """Stop rewards service components."""
        if self.listener is not None:
            await self.listener.stop()
        if isinstance(self.source, PostgresPolicySource):
            await self.source.stop()

        self.logger.info("Rewards service stopped")


def create_app(config: Optional[ServiceConfig] = None, source: Optional[PolicySource] = None):
    """Create rewards service application."""
    service = RewardsService(config=config, source=source)
    return service.app


if __name__ == "__main__":
    service = RewardsService()
    service.run()
