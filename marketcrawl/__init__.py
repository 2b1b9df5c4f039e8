"""Resilient crawler for a listings marketplace that resists automated access.

Sub-packages:
- ``antibot``: egress pool, backoff policy, challenge detection/resolution,
  header profiles and the operator channel
- ``collector``: fetch client, pacing, extraction and the crawl session orchestrator
"""

__version__ = "0.4.0"
