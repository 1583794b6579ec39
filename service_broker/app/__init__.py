"""
Broker Service package for the tiered credential broker.

The broker fronts the upstream generation API, enforcing:
- Identity: one durable opaque client id per caller context
- Tiers: FREE by default, one-way upgrade to PREMIUM
- Quota: hourly admissions per client, sized by tier
- Shared credentials: one upstream credential per tier, renewed single-flight

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.orchestrator: Per-request flow across the components below.
- app.identity, app.tiers, app.quota, app.credentials: Domain components.
- app.adapters: HTTP clients for the upstream credential and generation endpoints.
- app.persistence: Key-value stores (memory, Redis) with compare-and-swap.
"""
