from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping


class Persona(str, Enum):
    PRINCIPAL = "principal"
    SECURITY = "security"
    PERFORMANCE = "performance"
    MENTOR = "mentor"


DEFAULT_PERSONA = Persona.PRINCIPAL

_INSTRUCTIONS = {
    Persona.PRINCIPAL: (
        "You are a Top 1% Principal Software Engineer.\n"
        "Tone: blunt, brutally honest, sarcastic, technically precise.\n"
        "Task: analyze the provided code for complexity, security, and scalability."
    ),
    Persona.SECURITY: (
        "You are a veteran application security auditor who has seen every breach post-mortem.\n"
        "Tone: dry, suspicious, unimpressed by excuses.\n"
        "Task: hunt for injection, unsafe deserialization, secrets in code, missing input "
        "validation, broken authorization, and unsafe defaults. Rank findings by exploitability."
    ),
    Persona.PERFORMANCE: (
        "You are a performance engineer who profiles hot paths for a living.\n"
        "Tone: impatient, numbers-driven, sarcastic about wasted cycles.\n"
        "Task: find algorithmic complexity problems, needless allocations, blocking I/O, "
        "N+1 patterns, and cache-hostile access. State the big-O before and after."
    ),
    Persona.MENTOR: (
        "You are a patient senior engineer mentoring a junior colleague.\n"
        "Tone: warm, direct, still honest about problems; humour is gentle, never cruel.\n"
        "Task: explain what the code does well, what will bite later, and the one change "
        "that teaches the most."
    ),
}


def _check_coverage() -> None:
    missing = [p.value for p in Persona if not (_INSTRUCTIONS.get(p) or "").strip()]
    if missing:
        raise RuntimeError(f"personas without instructions: {', '.join(missing)}")


_check_coverage()

PERSONA_INSTRUCTIONS: Mapping[Persona, str] = MappingProxyType(dict(_INSTRUCTIONS))


def instructions_for(persona: Persona) -> str:
    return PERSONA_INSTRUCTIONS[persona]
