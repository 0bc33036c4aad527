"""Per-language rule packs consumed by the rule detector.

A rule either matches a phrase lexicon against the word stream or names a
special heuristic (speaking rate, long pauses) implemented in ``rules``.
Unknown languages fall back to English.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from .types import ISSUE_SEVERITIES, normalize_token

SPECIAL_PATTERNS = frozenset(
    {"speaking_rate_below_120", "speaking_rate_above_180", "long_pause_over_3s"}
)

DEFAULT_LANGUAGE = "en"

# category -> issue kind
ISSUE_KINDS = {
    "filler_words": "filler_word",
    "clarity_issues": "clarity_issue",
    "pause_issues": "long_pause",
    "repetition_issues": "repetition",
}


class RuleLoadError(ValueError):
    """Raised when a rule pack is internally inconsistent."""


@dataclass(frozen=True)
class Rule:
    category: str
    severity: str
    description: str
    tip: str
    phrases: tuple[tuple[str, ...], ...] = ()
    special: Optional[str] = None
    context_window: int = 5
    max_matches_per_minute: Optional[float] = None
    group_nearby: bool = False

    @property
    def kind(self) -> str:
        if self.special == "speaking_rate_below_120":
            return "pace_too_slow"
        if self.special == "speaking_rate_above_180":
            return "pace_too_fast"
        return ISSUE_KINDS.get(self.category, "other")


def _phrases(*values: str) -> tuple[tuple[str, ...], ...]:
    return tuple(tuple(normalize_token(part) for part in value.split()) for value in values)


def _pace_and_pause_rules(slow_tip: str, fast_tip: str, pause_tip: str) -> list[Rule]:
    return [
        Rule(
            category="pace_issues",
            severity="medium",
            description="Speaking rate is below 120 words per minute.",
            tip=slow_tip,
            special="speaking_rate_below_120",
        ),
        Rule(
            category="pace_issues",
            severity="medium",
            description="Speaking rate is above 180 words per minute.",
            tip=fast_tip,
            special="speaking_rate_above_180",
        ),
        Rule(
            category="pause_issues",
            severity="medium",
            description="Pause longer than 3 seconds between words.",
            tip=pause_tip,
            special="long_pause_over_3s",
        ),
    ]


_RAW_PACKS: dict[str, list[Rule]] = {
    "en": [
        Rule(
            category="filler_words",
            severity="medium",
            description="Vocal filler that interrupts the flow of speech.",
            tip="Pause silently instead of filling the gap.",
            phrases=_phrases("um", "uh", "er", "ah", "hmm", "erm", "uhm"),
        ),
        Rule(
            category="filler_words",
            severity="low",
            description="Verbal filler used as a discourse marker.",
            tip="Drop the filler and state your point directly.",
            phrases=_phrases("like", "you know", "basically", "literally", "i mean"),
            max_matches_per_minute=12,
        ),
        Rule(
            category="clarity_issues",
            severity="low",
            description="Hedging language weakens the message.",
            tip="Be definitive; replace hedges with specific statements.",
            phrases=_phrases("kind of", "sort of", "i guess", "i think maybe", "more or less"),
            group_nearby=True,
        ),
        *_pace_and_pause_rules(
            slow_tip="Pick up the pace slightly; aim for 140-160 words per minute.",
            fast_tip="Slow down and let key points land.",
            pause_tip="Keep pauses under two seconds unless you want a dramatic effect.",
        ),
    ],
    "es": [
        Rule(
            category="filler_words",
            severity="medium",
            description="Muletilla vocal que interrumpe el discurso.",
            tip="Haz una pausa en silencio en lugar de rellenar.",
            phrases=_phrases("eh", "em", "este", "mmm", "ehh"),
        ),
        Rule(
            category="filler_words",
            severity="low",
            description="Muletilla verbal usada como marcador.",
            tip="Elimina la muletilla y ve directo al punto.",
            phrases=_phrases("o sea", "pues", "bueno", "digamos", "tipo", "sabes"),
            max_matches_per_minute=12,
        ),
        Rule(
            category="clarity_issues",
            severity="low",
            description="Lenguaje impreciso que debilita el mensaje.",
            tip="Sé concreto en lugar de usar aproximaciones.",
            phrases=_phrases("más o menos", "como que", "algo así"),
            group_nearby=True,
        ),
        *_pace_and_pause_rules(
            slow_tip="Aumenta un poco el ritmo; apunta a 140-160 palabras por minuto.",
            fast_tip="Reduce la velocidad para que las ideas se asimilen.",
            pause_tip="Mantén las pausas por debajo de dos segundos.",
        ),
    ],
    "pt": [
        Rule(
            category="filler_words",
            severity="medium",
            description="Vício de linguagem vocal que interrompe a fala.",
            tip="Faça uma pausa silenciosa em vez de preencher.",
            phrases=_phrases("é", "hum", "ah", "eh", "ãh"),
        ),
        Rule(
            category="filler_words",
            severity="low",
            description="Vício de linguagem usado como marcador.",
            tip="Elimine o vício e vá direto ao ponto.",
            phrases=_phrases("tipo", "né", "então", "assim", "sabe", "basicamente"),
            max_matches_per_minute=12,
        ),
        Rule(
            category="clarity_issues",
            severity="low",
            description="Linguagem vaga enfraquece a mensagem.",
            tip="Seja específico em vez de usar aproximações.",
            phrases=_phrases("mais ou menos", "meio que", "sei lá"),
            group_nearby=True,
        ),
        *_pace_and_pause_rules(
            slow_tip="Acelere um pouco; mire em 140-160 palavras por minuto.",
            fast_tip="Fale mais devagar para as ideias serem absorvidas.",
            pause_tip="Mantenha as pausas abaixo de dois segundos.",
        ),
    ],
}


def validate_rules(rules: list[Rule]) -> list[str]:
    errors: list[str] = []
    for index, rule in enumerate(rules):
        label = f"{rule.category}[{index}]"
        if rule.severity not in ISSUE_SEVERITIES:
            errors.append(f"{label}: invalid severity '{rule.severity}'")
        if not rule.phrases and rule.special is None:
            errors.append(f"{label}: missing pattern")
        if rule.special is not None and rule.special not in SPECIAL_PATTERNS:
            errors.append(f"{label}: unknown special pattern '{rule.special}'")
        if not rule.description or not rule.tip:
            errors.append(f"{label}: missing description or tip")
    return errors


def available_languages() -> list[str]:
    return sorted(_RAW_PACKS)


@lru_cache(maxsize=None)
def load_rules(language: str = DEFAULT_LANGUAGE) -> tuple[Rule, ...]:
    """Return the validated rule pack for a language code such as ``pt-BR``."""

    base_language = (language or DEFAULT_LANGUAGE).split("-")[0].lower()
    rules = _RAW_PACKS.get(base_language, _RAW_PACKS[DEFAULT_LANGUAGE])
    errors = validate_rules(rules)
    if errors:
        raise RuleLoadError(f"Invalid rules for {base_language}: {'; '.join(errors)}")
    return tuple(rules)


def filler_lexicon(language: str = DEFAULT_LANGUAGE) -> frozenset[tuple[str, ...]]:
    """All filler phrases of a language, used by metrics and the refiner."""

    return frozenset(
        phrase
        for rule in load_rules(language)
        if rule.category == "filler_words"
        for phrase in rule.phrases
    )


__all__ = [
    "Rule",
    "RuleLoadError",
    "SPECIAL_PATTERNS",
    "available_languages",
    "filler_lexicon",
    "load_rules",
    "validate_rules",
]
