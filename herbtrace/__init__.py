"""
Herbtrace: herb supply-chain traceability core.

- core.resources: collection, processing and test resource models
- core.workflow: batch status state machine and role gating
- core.provenance: provenance timelines and traceability scores
- core.sync: offline-resilient submission queue
- core.events: cross-session notifier and audit event log
- service: TraceabilityService composition root
- api: FastAPI surface for the role portals
"""

__version__ = "0.1.0"
