"""
Power-usage recording daemon.

Polls the remaining electricity degree of a dormitory room from the campus
e-pay service, appends every change to a per-room record log, and carves
historical slices out of that log into named, immutable archives.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
