# Copyright (c) 2026 Veritas Aequitas Holdings LLC. All rights reserved.
"""tiace - Threat intelligence aggregation and correlation engine."""

__version__ = "0.1.0"

__all__ = ["__version__"]
