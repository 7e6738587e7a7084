# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Abstract base for enrichment stages."""

from __future__ import annotations

from abc import ABC, abstractmethod

from tiace.enrichment.context import EnrichmentContext


class EnrichmentStage(ABC):
    """All enrichment stages must implement this interface.

    Stages are idempotent: running one twice over the same indicator leaves
    it as running it once did.
    """

    @property
    @abstractmethod
    def stage_name(self) -> str:
        """Unique identifier for this stage."""
        ...

    @property
    @abstractmethod
    def order(self) -> int:
        """Execution order (lower runs first)."""
        ...

    @abstractmethod
    async def enrich(self, context: EnrichmentContext) -> str:
        """Enrich the context in place and return a short outcome label."""
        ...
