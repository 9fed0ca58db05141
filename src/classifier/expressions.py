"""
Regional multi-word expressions.

Fixed expressions such as "mate amargo" are recognized before single-word
tiering so they are classified as one unit and never split into tokens.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from common.utils import normalize_word


@dataclass(frozen=True)
class ExpressionTemplate:
    pattern: str
    regex: re.Pattern
    pos: str
    description: str


def _template(pattern: str, regex: str, description: str, pos: str = "NOUN_COMPOUND"):
    return ExpressionTemplate(
        pattern=pattern,
        regex=re.compile(regex, re.IGNORECASE),
        pos=pos,
        description=description,
    )


EXPRESSION_TEMPLATES = (
    _template(
        "mate [ADJECTIVE]",
        r"\bmate\s+(amargo|doce|quente|frio|puro|chimarrão|gelado|requentado)\b",
        "Kinds of mate",
    ),
    _template(
        "cavalo [ADJECTIVE]",
        r"\bcavalo\s+(gateado|tordilho|zaino|alazão|pampa|preto|baio|picaço|gordo|magro)\b",
        "Horse coats and traits",
    ),
    _template(
        "tropa [ADJECTIVE]",
        r"\btropa\s+(velha|nova|gorda|magra|mansa|xucra|boa|ruim)\b",
        "Qualities of a cattle drove",
    ),
    _template(
        "[OBJECT] de [MATERIAL]",
        r"\b(bomba|cuia|bota|chiripá|tirador|guaiaca)\s+de\s+(prata|couro|osso|madeira|metal)\b",
        "Cultural objects by material",
    ),
    _template("pago [NOUN]", r"\bpago\s+(lindo|véio|piá|barbudo)\b", "Homeland epithets"),
    _template(
        "prenda [ADJECTIVE]",
        r"\bprenda\s+(linda|querida|faceira|prendada|gaúcha)\b",
        "Epithets for the gaúcha woman",
    ),
    _template(
        "churrasco de [MEAT]",
        r"\bchurrasco\s+de\s+(gado|cordeiro|porco|costela|picanha)\b",
        "Kinds of churrasco",
    ),
    _template(
        "[ACTION] no campo",
        r"\b(lida|trabalho|faina|campereada|rodeio)\s+no\s+campo\b",
        "Rural work",
    ),
    _template(
        "de [ADJECTIVE] tradição",
        r"\bde\s+(boa|velha|pura|rica)\s+tradição\b",
        "Cultural heritage phrases",
        pos="PREP_PHRASE",
    ),
)

FIXED_EXPRESSIONS = {
    "no lombo": "PREP_PHRASE",
    "na querência": "PREP_PHRASE",
    "pelos pagos": "PREP_PHRASE",
    "da campanha": "PREP_PHRASE",
    "pro galpão": "PREP_PHRASE",
}


@dataclass(frozen=True)
class ExpressionMatch:
    text: str
    start: int
    end: int
    lemma: str
    pos: str


def match_expression(word: str) -> ExpressionMatch | None:
    """Return a match when *word* is, in its entirety, a known expression."""
    text = normalize_word(word)
    if " " not in text:
        return None
    if text in FIXED_EXPRESSIONS:
        return ExpressionMatch(text, 0, len(text), text, FIXED_EXPRESSIONS[text])
    for template in EXPRESSION_TEMPLATES:
        if template.regex.fullmatch(text):
            return ExpressionMatch(text, 0, len(text), text, template.pos)
    return None


def is_expression(word: str) -> bool:
    return match_expression(word) is not None


def detect_expressions(text: str) -> list[ExpressionMatch]:
    """Find non-overlapping expressions in running text, in order of position."""
    lowered = text.lower()
    found: list[ExpressionMatch] = []
    for expression, pos in FIXED_EXPRESSIONS.items():
        for match in re.finditer(rf"\b{re.escape(expression)}\b", lowered):
            found.append(
                ExpressionMatch(
                    text[match.start() : match.end()], match.start(), match.end(), expression, pos
                )
            )
    for template in EXPRESSION_TEMPLATES:
        for match in template.regex.finditer(text):
            found.append(
                ExpressionMatch(
                    match.group(0),
                    match.start(),
                    match.end(),
                    normalize_word(match.group(0)),
                    template.pos,
                )
            )

    found.sort(key=lambda m: (m.start, -(m.end - m.start)))
    result: list[ExpressionMatch] = []
    for match in found:
        if result and match.start < result[-1].end:
            continue
        result.append(match)
    return result
