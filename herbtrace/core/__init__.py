"""
Herbtrace Core Library

- resources: tagged resource variants with validation
- workflow: batch record and status state machine
- provenance: aggregation and traceability scoring
- protocols: Transport and storage interfaces
- storage: JSON backends
- sync: durable submission queue
- events: batch notifier and audit event log
"""
