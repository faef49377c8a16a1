"""
Rewards Service package for the loyalty platform.

This package evaluates which reward policies apply to a business event and
how much they award. It provides:

- app.main: API surface for evaluations, cache invalidation and stats.
- app.policies: Policy model, conditions, calculator, resolver, registry, engine.
- app.sources: In-memory and file-backed policy sources.
- app.persistence: PostgreSQL policy source with version history.
- app.cache: Redis change notifications for registry invalidation.

Guidelines:
- Evaluations are read-only over an immutable policy snapshot.
- A buggy policy is excluded with a reason, never fatal to an evaluation.
- Keep arithmetic integral/Decimal; totals must reconstruct exactly.
"""
