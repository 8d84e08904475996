"""ORPAR cognitive cycle phases.

The cycle runs observation -> reasoning -> planning -> action -> reflection
and wraps back to observation for the next loop.
"""

from __future__ import annotations

from enum import Enum


class OrparPhase(str, Enum):
    """Phase of the Observe-Reason-Plan-Act-Reflect cycle."""

    OBSERVATION = "observation"
    REASONING = "reasoning"
    PLANNING = "planning"
    ACTION = "action"
    REFLECTION = "reflection"


PHASE_ORDER: list[OrparPhase] = [
    OrparPhase.OBSERVATION,
    OrparPhase.REASONING,
    OrparPhase.PLANNING,
    OrparPhase.ACTION,
    OrparPhase.REFLECTION,
]

# Short verb form recorded in a memory's context
PHASE_CONTEXT_NAMES: dict[OrparPhase, str] = {
    OrparPhase.OBSERVATION: "observe",
    OrparPhase.REASONING: "reason",
    OrparPhase.PLANNING: "plan",
    OrparPhase.ACTION: "act",
    OrparPhase.REFLECTION: "reflect",
}


def is_valid_orpar_phase(value: str) -> bool:
    """Check whether a string names an ORPAR phase."""
    return value in {phase.value for phase in OrparPhase}


def get_next_orpar_phase(phase: OrparPhase | str) -> OrparPhase:
    """Get the phase that follows `phase`, wrapping reflection to observation."""
    phase = OrparPhase(phase)
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[(index + 1) % len(PHASE_ORDER)]


def get_previous_orpar_phase(phase: OrparPhase | str) -> OrparPhase:
    """Get the phase that precedes `phase`, wrapping observation to reflection."""
    phase = OrparPhase(phase)
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[(index - 1) % len(PHASE_ORDER)]
