"""
Projects, personas, policy rules and prompt templates.

Plain CRUD; the generation pipeline only reads these rows.
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_session
from app.models import Persona, PolicyRule, Project, PromptTemplate
from app.routes_auth import require_auth
from app.schemas import (
    PersonaCreate,
    PersonaRead,
    PolicyRuleCreate,
    PolicyRuleRead,
    ProjectCreate,
    ProjectRead,
    PromptTemplateCreate,
    PromptTemplateRead,
)

router = APIRouter(prefix="/api", tags=["projects"], dependencies=[Depends(require_auth)])

SessionDep = Depends(get_session)


async def _get_or_404(session: AsyncSession, model, entity_id: str, label: str):
    entity = await session.get(model, entity_id)
    if not entity:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return entity


async def _delete(session: AsyncSession, model, entity_id: str, label: str) -> None:
    entity = await _get_or_404(session, model, entity_id, label)
    await session.delete(entity)
    await session.commit()


@router.post("/projects", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(data: ProjectCreate, session: AsyncSession = SessionDep):
    project = Project(name=data.name.strip())
    session.add(project)
    await session.commit()
    await session.refresh(project)
    return project


@router.get("/projects", response_model=List[ProjectRead])
async def list_projects(session: AsyncSession = SessionDep):
    res = await session.execute(select(Project).order_by(Project.created_at.desc()))
    return res.scalars().all()


@router.get("/projects/{project_id}", response_model=ProjectRead)
async def get_project(project_id: str, session: AsyncSession = SessionDep):
    return await _get_or_404(session, Project, project_id, "Project")


@router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(project_id: str, session: AsyncSession = SessionDep):
    await _delete(session, Project, project_id, "Project")


@router.post("/personas", response_model=PersonaRead, status_code=status.HTTP_201_CREATED)
async def create_persona(data: PersonaCreate, session: AsyncSession = SessionDep):
    if data.project_id:
        await _get_or_404(session, Project, data.project_id, "Project")
    persona = Persona(**data.model_dump())
    session.add(persona)
    await session.commit()
    await session.refresh(persona)
    return persona


@router.get("/personas", response_model=List[PersonaRead])
async def list_personas(
    session: AsyncSession = SessionDep,
    project_id: Optional[str] = Query(None, alias="projectId"),
):
    query = select(Persona).order_by(Persona.created_at.desc())
    if project_id:
        query = query.where(Persona.project_id == project_id)
    res = await session.execute(query)
    return res.scalars().all()


@router.delete("/personas/{persona_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_persona(persona_id: str, session: AsyncSession = SessionDep):
    await _delete(session, Persona, persona_id, "Persona")


@router.post("/policy-rules", response_model=PolicyRuleRead, status_code=status.HTTP_201_CREATED)
async def create_policy_rule(data: PolicyRuleCreate, session: AsyncSession = SessionDep):
    if data.persona_id:
        await _get_or_404(session, Persona, data.persona_id, "Persona")
    rule = PolicyRule(
        persona_id=data.persona_id,
        type=data.type.value,
        text=data.text.strip(),
        severity=data.severity.value,
    )
    session.add(rule)
    await session.commit()
    await session.refresh(rule)
    return rule


@router.get("/policy-rules", response_model=List[PolicyRuleRead])
async def list_policy_rules(
    session: AsyncSession = SessionDep,
    persona_id: Optional[str] = Query(None, alias="personaId"),
):
    query = select(PolicyRule).order_by(PolicyRule.created_at)
    if persona_id:
        query = query.where(PolicyRule.persona_id == persona_id)
    res = await session.execute(query)
    return res.scalars().all()


@router.delete("/policy-rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy_rule(rule_id: str, session: AsyncSession = SessionDep):
    await _delete(session, PolicyRule, rule_id, "Policy rule")


@router.post("/prompt-templates", response_model=PromptTemplateRead, status_code=status.HTTP_201_CREATED)
async def create_prompt_template(data: PromptTemplateCreate, session: AsyncSession = SessionDep):
    if data.persona_id:
        await _get_or_404(session, Persona, data.persona_id, "Persona")
    template = PromptTemplate(persona_id=data.persona_id, key=data.key.value, template=data.template)
    session.add(template)
    await session.commit()
    await session.refresh(template)
    return template


@router.get("/prompt-templates", response_model=List[PromptTemplateRead])
async def list_prompt_templates(
    session: AsyncSession = SessionDep,
    persona_id: Optional[str] = Query(None, alias="personaId"),
):
    query = select(PromptTemplate).order_by(PromptTemplate.created_at.desc())
    if persona_id:
        query = query.where(PromptTemplate.persona_id == persona_id)
    res = await session.execute(query)
    return res.scalars().all()


@router.delete("/prompt-templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_prompt_template(template_id: str, session: AsyncSession = SessionDep):
    await _delete(session, PromptTemplate, template_id, "Prompt template")
