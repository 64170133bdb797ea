"""
Battery estimation service package.

Consumes raw battery telemetry (voltage, current, timestamp) from a durable
FIFO queue, fuses it into per-battery SOC and SOH estimates, maintains the
cycle/degradation model, and persists processed readings and lifecycle
events.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-001)

TODO:
- None
"""
