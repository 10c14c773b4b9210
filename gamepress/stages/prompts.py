"""Stage prompt builders."""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from ..clients.base import GenerationRequest
from ..constants import DEFAULT_STAGE_MAX_TOKENS, DEFAULT_STAGE_TEMPERATURE
from ..contracts import (
    ContentSettings,
    GameData,
    GenerationFlowConfiguration,
    StageKind,
    WorkflowRecord,
)
from ..models import FormatRules, ItemSnapshot

FORMAT_ANALYSIS_SYSTEM = (
    "You are a content format analyst. Study the target article format and "
    "describe it as compact, machine-checkable rules. Reply with a single JSON "
    "object only."
)

CONTENT_GENERATION_SYSTEM = (
    "You are an SEO copywriter for browser games. Write original, accurate "
    "articles that follow the given format exactly. Reply with a single JSON "
    "object matching the template."
)

FORMAT_VALIDATION_SYSTEM = (
    "You are a strict format validator. Correct the draft so it satisfies "
    "every rule without changing its meaning. Reply with the corrected JSON "
    "object only."
)

_MODE_GUIDANCE = {
    "strict": "Follow the template and constraints exactly; keep a professional tone.",
    "standard": "Follow the template; small stylistic liberties are fine.",
    "free": "Follow the template fields but feel free to be creative in tone.",
}

_READABILITY = {
    "beginner": "simple sentences suitable for newcomers",
    "intermediate": "clear language for regular players",
    "advanced": "rich vocabulary for experienced gamers",
}


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)


def format_analysis_prompt(workflow: WorkflowRecord) -> str:
    return (
        "Analyse the following target format and extract its rules.\n\n"
        f"Target format:\n{workflow.target_format}\n\n"
        "Return JSON with these keys:\n"
        '- "compactTemplate": the output skeleton with every field and its type\n'
        '- "fieldConstraints": list of per-field constraints\n'
        '- "validationRules": list of rules a finished article must satisfy\n'
        '- "detailedRules" (optional): {"schema", "structureRules", "outputTemplate"}'
    )


def content_generation_prompt(
    game: GameData,
    rules: FormatRules,
    settings: ContentSettings,
    structured_types: Optional[list] = None,
) -> str:
    density = settings.keyword_density
    total = settings.word_count.total
    lines = [
        f"Write an article for the game \"{game.game_name}\".",
        "",
        "Game data:",
        f"- Main keyword: {game.main_keyword}",
    ]
    if game.long_tail_keywords:
        lines.append(f"- Long-tail keywords: {', '.join(game.long_tail_keywords)}")
    if game.real_url:
        lines.append(f"- Game URL: {game.real_url}")
    if game.video_link:
        lines.append(f"- Video: {game.video_link}")
    if game.internal_links:
        lines.append(f"- Internal links: {', '.join(game.internal_links)}")
    if game.competitor_pages:
        lines.append(f"- Competitor pages: {', '.join(game.competitor_pages)}")

    lines += [
        "",
        f"Template:\n{_dump(rules.compact_template)}",
        f"Field constraints:\n{_dump(rules.field_constraints)}",
        "",
        "Content requirements:",
        f"- Total length {total.min}-{total.max} words",
    ]
    for module, limits in settings.word_count.modules.items():
        lines.append(f"- '{module}': {limits.min}-{limits.max} words")
    lines += [
        f"- Main keyword density about {density.main_keyword.target}% "
        f"(at most {density.main_keyword.max}%)",
        f"- Long-tail keyword density about {density.long_tail_keywords.target}% "
        f"(at most {density.long_tail_keywords.max}%)",
    ]
    if density.natural_distribution:
        lines.append("- Spread keywords naturally; never stuff them")
    params = settings.quality_params
    lines += [
        f"- Audience: {params.target_audience}; use {_READABILITY[params.readability_level]}",
        f"- {_MODE_GUIDANCE[settings.generation_mode]}",
    ]
    if structured_types:
        lines.append(f"- Include data usable for schema.org types: {', '.join(structured_types)}")
    return "\n".join(lines)


def format_validation_prompt(rules: FormatRules, draft: Mapping[str, Any]) -> str:
    return (
        "Check the draft against the rules and return the corrected article.\n\n"
        f"Template:\n{_dump(rules.compact_template)}\n\n"
        f"Validation rules:\n{_dump(rules.validation_rules)}\n\n"
        f"Draft:\n{_dump(dict(draft))}\n\n"
        "Every template field must be present and non-empty."
    )


def build_request(
    stage: StageKind,
    item: ItemSnapshot,
    game: GameData,
    config: GenerationFlowConfiguration,
    workflow: WorkflowRecord,
    *,
    max_tokens: Optional[Mapping[str, int]] = None,
    temperature: Optional[Mapping[str, float]] = None,
) -> GenerationRequest:
    """Build the request for ``stage`` from the item's earlier outputs.

    Content generation consumes the format rules plus the game record;
    validation consumes the rules plus the draft.
    """
    max_tokens = max_tokens or DEFAULT_STAGE_MAX_TOKENS
    temperature = temperature or DEFAULT_STAGE_TEMPERATURE
    context: Dict[str, Any] = {
        "itemId": item.item_id,
        "workflowId": workflow.id,
        "game": game.model_dump(by_alias=True),
    }

    if stage == StageKind.FORMAT_ANALYSIS:
        system, user = FORMAT_ANALYSIS_SYSTEM, format_analysis_prompt(workflow)
    elif stage == StageKind.CONTENT_GENERATION:
        settings = workflow.content_settings or config.content
        structured = (
            (config.structured_data.schema_types or workflow.structured_data_types)
            if config.enable_structured_data
            else None
        )
        system = CONTENT_GENERATION_SYSTEM
        user = content_generation_prompt(game, item.format_rules, settings, structured)
        context["formatRules"] = item.format_rules.model_dump(by_alias=True)
    else:
        system = FORMAT_VALIDATION_SYSTEM
        user = format_validation_prompt(item.format_rules, item.draft or {})
        context["formatRules"] = item.format_rules.model_dump(by_alias=True)
        context["draft"] = item.draft or {}

    return GenerationRequest(
        stage=stage,
        system_prompt=system,
        user_prompt=user,
        max_tokens=max_tokens.get(stage.value),
        temperature=temperature.get(stage.value),
        context=context,
    )
