"""Local quality scoring of generated articles."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Sequence

from ..contracts import ContentSettings, GameData
from ..models import QualityMetrics
from .parsing import collect_text, has_value

_WORD = re.compile(r"[\w'-]+", re.UNICODE)

STRUCTURE_POINTS = 25
COMPLETENESS_POINTS = 25
WORD_COUNT_POINTS = 20
KEYWORD_POINTS = 20
# Out of 10; no originality detector is wired in.
ASSUMED_ORIGINALITY = 8


def count_words(text: str) -> int:
    return len(_WORD.findall(text))


def keyword_density(text: str, keywords: Sequence[str]) -> float:
    """Share of ``text`` characters covered by ``keywords``, in percent."""
    haystack = text.lower()
    if not haystack:
        return 0.0
    covered = 0
    for keyword in keywords:
        needle = keyword.lower().strip()
        if needle:
            covered += haystack.count(needle) * len(needle)
    return covered / len(haystack) * 100


def _grade(score: float) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def _word_count_score(
    content: Dict[str, Any], settings: ContentSettings, recommendations: List[str]
) -> tuple[int, float]:
    total = count_words(collect_text(content))
    target = settings.word_count.total
    in_range = target.min <= total <= (target.max or total)
    if total < target.min:
        recommendations.append(
            f"Content too short ({total} words); aim for {target.min}-{target.max}"
        )
    elif target.max and total > target.max:
        recommendations.append(
            f"Content too long ({total} words); trim to {target.min}-{target.max}"
        )

    for module, limits in settings.word_count.modules.items():
        words = count_words(collect_text(content.get(module)))
        if words < limits.min:
            recommendations.append(
                f"Module '{module}' has {words} words; expand to at least {limits.min}"
            )
        elif limits.max and words > limits.max:
            recommendations.append(
                f"Module '{module}' has {words} words; keep it under {limits.max}"
            )

    if in_range:
        return total, float(WORD_COUNT_POINTS)
    return total, max(5.0, WORD_COUNT_POINTS - abs(total - target.min) / 100)


def evaluate_quality(
    content: Dict[str, Any],
    game: GameData,
    settings: ContentSettings,
    required_fields: Sequence[str],
    threshold: float,
) -> QualityMetrics:
    """Score ``content`` out of 100 and grade it A-F.

    Points: structure 25, completeness of required fields 25, word count 20,
    keyword optimisation 20, originality 10.
    """
    recommendations: List[str] = []
    scores: Dict[str, float] = {}

    if isinstance(content, dict) and content:
        scores["structure"] = STRUCTURE_POINTS
    else:
        scores["structure"] = 0
        recommendations.append("Content is not a structured JSON object")

    present = [f for f in required_fields if has_value(content, f)]
    scores["completeness"] = round(
        len(present) / max(1, len(required_fields)) * COMPLETENESS_POINTS
    )
    if scores["completeness"] < 20:
        recommendations.append(
            f"Missing {len(required_fields) - len(present)} required field(s)"
        )

    total_words, scores["wordCount"] = _word_count_score(
        content, settings, recommendations
    )

    text = collect_text(content)
    density = settings.keyword_density
    main_density = keyword_density(text, [game.main_keyword])
    long_tail_density = keyword_density(text, game.long_tail_keywords)
    optimal = True
    if main_density < density.main_keyword.target * 0.8:
        recommendations.append(
            f"Main keyword '{game.main_keyword}' density {main_density:.2f}% is low; "
            f"target {density.main_keyword.target}%"
        )
        optimal = False
    elif main_density > density.main_keyword.max:
        recommendations.append(
            f"Main keyword '{game.main_keyword}' density {main_density:.2f}% exceeds "
            f"{density.main_keyword.max}%"
        )
        optimal = False
    if game.long_tail_keywords:
        if long_tail_density < density.long_tail_keywords.target * 0.8:
            recommendations.append(
                f"Long-tail keyword density {long_tail_density:.2f}% is low; "
                f"target {density.long_tail_keywords.target}%"
            )
            optimal = False
        elif long_tail_density > density.long_tail_keywords.max:
            recommendations.append(
                f"Long-tail keyword density {long_tail_density:.2f}% exceeds "
                f"{density.long_tail_keywords.max}%"
            )
            optimal = False
    scores["keywordOptimization"] = KEYWORD_POINTS if optimal else 15

    scores["originality"] = ASSUMED_ORIGINALITY

    score = round(sum(scores.values()), 2)
    return QualityMetrics(
        word_count=total_words,
        main_keyword_density=round(main_density, 3),
        long_tail_keyword_density=round(long_tail_density, 3),
        score=score,
        scores=scores,
        grade=_grade(score),
        recommendations=recommendations,
        passed_threshold=score / 100 >= threshold,
    )
