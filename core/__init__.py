"""Core module - carrier-neutral ingestion building blocks.

This module contains the canonical data models, column mapping and record
normalization, audit, logging, configuration and the exception hierarchy.
It is intentionally carrier-agnostic.

Carrier-specific rules (tracking patterns, provenance) belong in /carriers/.
"""

__version__ = "1.0.0"
