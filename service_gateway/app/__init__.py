"""
LLM protocol gateway service package.

The gateway serves dialect A (OpenAI-shaped) and dialect B
(Anthropic-shaped) chat clients from a single upstream provider:
- Translation between both dialects and the canonical upstream shape
- Upstream credential lifecycle (device flow, single-flight refresh)
- Admission control pacing every upstream call

Structure:
- app.main: FastAPI app, routes, and startup/shutdown wiring.
- app.translation: request, response and stream translation plus error envelopes.
- app.auth: credential manager, device flow client and credential stores.
- app.ratelimit: admission controller.
- app.adapters: upstream HTTP client and model catalog.
- app.domain: request dispatcher.
"""
