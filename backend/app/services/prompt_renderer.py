"""
Prompt rendering: persona + policy context wrapped around a task template.

Template lookup: persona-specific template for the key, else the global one.
Variables use {{name}} placeholders; unknown placeholders are left as-is.
"""
from __future__ import annotations

import re
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import EntityNotFoundError, PromptTemplateNotFoundError
from app.models import Persona, PolicyRule, PolicyRuleSeverity, PolicyRuleType, PromptTemplate

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")


def interpolate(template: str, variables: dict[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


def _format_rules(rules: list[PolicyRule], rule_type: PolicyRuleType, severity: PolicyRuleSeverity) -> str:
    header = f"{rule_type.value} ({severity.value})"
    matched = [f"- {rule.text}" for rule in rules if rule.type == rule_type.value and rule.severity == severity.value]
    return "\n".join([header, *(matched or ["- none"])])


class PromptRenderer:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _find_template(self, template_key: str, persona_id: str | None) -> PromptTemplate:
        template = None
        if persona_id:
            template = await self.session.scalar(
                select(PromptTemplate)
                .where(PromptTemplate.key == template_key, PromptTemplate.persona_id == persona_id)
                .order_by(PromptTemplate.created_at.desc())
                .limit(1)
            )
        if template is None:
            template = await self.session.scalar(
                select(PromptTemplate)
                .where(PromptTemplate.key == template_key, PromptTemplate.persona_id.is_(None))
                .order_by(PromptTemplate.created_at.desc())
                .limit(1)
            )
        if template is None:
            raise PromptTemplateNotFoundError(f'Prompt template "{template_key}" not found')
        return template

    async def render(
        self,
        persona_id: str,
        template_key: str,
        variables: dict[str, Any],
        *,
        response_language: str | None = None,
    ) -> str:
        persona = await self.session.get(Persona, persona_id)
        if persona is None:
            raise EntityNotFoundError("Persona not found")
        template = await self._find_template(template_key, persona_id)
        rules = list(
            (
                await self.session.scalars(
                    select(PolicyRule)
                    .where(or_(PolicyRule.persona_id == persona_id, PolicyRule.persona_id.is_(None)))
                    .order_by(PolicyRule.created_at)
                )
            ).all()
        )

        return "\n".join([
            "SYSTEM CONTEXT",
            "",
            "PERSONA",
            f"Name: {persona.name}",
            f"Age: {persona.age if persona.age is not None else 'n/a'}",
            f"Archetype/Tone: {persona.archetype_tone or 'n/a'}",
            f"Bio: {persona.bio or 'n/a'}",
            f"Visual code: {persona.visual_code or 'n/a'}",
            f"Voice code: {persona.voice_code or 'n/a'}",
            f"Response language: {response_language or 'n/a'}",
            "",
            "POLICY",
            _format_rules(rules, PolicyRuleType.do, PolicyRuleSeverity.hard),
            _format_rules(rules, PolicyRuleType.do, PolicyRuleSeverity.soft),
            _format_rules(rules, PolicyRuleType.dont, PolicyRuleSeverity.hard),
            _format_rules(rules, PolicyRuleType.dont, PolicyRuleSeverity.soft),
            "",
            f"TASK TEMPLATE [{template_key}]",
            interpolate(template.template, variables),
        ])
