"""
AI Gateway Service package.

The gateway fronts chat completion requests, enforcing:
- Payload bounds: user text length, in-flight material processing, context clamps
- Per-identity admission: a distributed lock plus a sliding-window quota
- Grounding: lexical retrieval over the class's stored materials
- Retries with exponential backoff for transient upstream failures

Structure:
- app.main: FastAPI app, routes, and service wiring.
- app.orchestrator: The per-request pipeline.
- app.identity: Caller identity keys.
- app.coordination: Redis and in-process lock/quota backends.
- app.guard: Admission checks and payload clamps.
- app.retrieval: Keyword ranking of material chunks.
- app.adapters: Upstream completion client and materials store.
"""
