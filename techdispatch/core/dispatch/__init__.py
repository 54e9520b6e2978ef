# techdispatch/core/dispatch/__init__.py
"""
Dispatch engine — matches a pending service job to field technicians.

This package handles the search and assignment lifecycle:
- ``geo`` — Haversine distance and linear-speed ETA
- ``scoring`` — per-technician ranking score
- ``ranker`` — radius/city filtered, scored top-N candidate list
- ``pool`` — candidate pool reducers (create, expand, accept, reject)
- ``controller`` — search loop, radius expansion, accept/reject state machine
- ``tracking`` — technician location ingest and job tracking views
- ``views`` — pydantic models returned to callers

Dispatch code talks to storage only through ``techdispatch.core.ports``.
"""
