# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Dedup and identity resolution."""

from tiace.identity.actors import ActorDirectory
from tiace.identity.merge import combine_confidence, conflict_reason, merge_observation
from tiace.identity.resolver import Claim, Decision, DecisionKind, IdentityResolver

__all__ = [
    "ActorDirectory",
    "Claim",
    "Decision",
    "DecisionKind",
    "IdentityResolver",
    "combine_confidence",
    "conflict_reason",
    "merge_observation",
]
