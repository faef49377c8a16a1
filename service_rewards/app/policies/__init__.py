"""
Reward policy engine package.

Turns a PolicyContext into an EvaluationResult through a one-way pipeline:
registry lookup, condition filtering, per-policy contribution, stacking
resolution.

Modules of interest:
- models: Frozen data classes for policies, contexts, contributions and results.
- definitions: Pydantic schemas that validate authored policies at load time.
- conditions: Pure condition evaluator.
- calculator: Per-policy reward contributions.
- resolver: Exclusive / additive / multiplicative stacking.
- registry: Read-through, copy-on-write policy cache.
- engine: Orchestrator with per-policy failure isolation and deadlines.
"""
