"""
Harvester daemon package for the FusionSolar telemetry pipeline.

Drives a browser session against the FusionSolar portal, captures the
ephemeral Roarand token, discovers the site -> gateway -> device topology,
fetches per-device signals in bounded concurrent chunks, and normalizes
them into stable per-device records buffered in a local spool.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""
