"""Director package.

Plans each moment through the bounded plan, technical fix and creative check
loop before any generation money is spent.
"""
from __future__ import annotations

from .agents import (
    DirectorAgents,
    InstructionRewriter,
    LLMSequenceRewriter,
    PlanningContext,
    get_director_agents,
    parse_json_block,
)
from .fixes import apply_fixes, validate_structure
from .pipeline import DirectorOutcome, DirectorPipeline, load_character_refs

__all__ = [
    "DirectorAgents",
    "DirectorOutcome",
    "DirectorPipeline",
    "InstructionRewriter",
    "LLMSequenceRewriter",
    "PlanningContext",
    "apply_fixes",
    "get_director_agents",
    "load_character_refs",
    "parse_json_block",
    "validate_structure",
]
