"""Sequential asset generation and export for planned sessions."""
from __future__ import annotations

from .cache import BackgroundRegistry, CacheDecision, CharacterCache, MomentAssetCache
from .orchestrator import GenerationOrchestrator, get_generation_orchestrator, validate_asset
from .progress import ProgressTracker

__all__ = [
    "BackgroundRegistry",
    "CacheDecision",
    "CharacterCache",
    "GenerationOrchestrator",
    "MomentAssetCache",
    "ProgressTracker",
    "get_generation_orchestrator",
    "validate_asset",
]
