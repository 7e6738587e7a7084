# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""Enrichment lookup cache."""

from tiace.cache.manager import CacheManager, create_cache_manager, get_cache_manager, reset_cache_manager

__all__ = ["CacheManager", "create_cache_manager", "get_cache_manager", "reset_cache_manager"]
