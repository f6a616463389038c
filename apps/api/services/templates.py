"""Template registry: immutable, revisioned generation styles."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.template import Template
from services.errors import NotFoundError, ValidationError


DEFAULT_TEMPLATES: List[Dict[str, Any]] = [
    {
        "id": "classic",
        "name": "Classic",
        "style_params": {"colorScheme": "balanced", "composition": "centered", "mood": "friendly", "textOverlay": True},
    },
    {
        "id": "bold",
        "name": "Bold",
        "style_params": {"colorScheme": "vibrant", "composition": "dynamic", "mood": "energetic", "textOverlay": True},
    },
    {
        "id": "minimal",
        "name": "Minimal",
        "style_params": {"colorScheme": "muted", "composition": "rule_of_thirds", "mood": "calm", "textOverlay": False},
    },
]

MAX_STYLE_PARAM_KEYS = 50


async def ensure_default_templates(db: AsyncSession) -> int:
    """Seed built-in templates that are missing. Returns the number created."""
    existing = await db.execute(
        select(Template.id).where(Template.id.in_([item["id"] for item in DEFAULT_TEMPLATES]))
    )
    present = set(existing.scalars().all())
    created = 0
    for item in DEFAULT_TEMPLATES:
        if item["id"] in present:
            continue
        db.add(
            Template(
                id=item["id"],
                name=item["name"],
                style_params=dict(item["style_params"]),
                credit_cost=max(int(settings.DEFAULT_TEMPLATE_CREDIT_COST), 0),
                revision=1,
            )
        )
        created += 1
    if created:
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return 0
    return created


def _visible_to(user_id: Optional[str]):
    if user_id is None:
        return Template.owner_user_id.is_(None)
    return or_(Template.owner_user_id.is_(None), Template.owner_user_id == user_id)


async def get_template(db: AsyncSession, template_id: str, user_id: Optional[str] = None) -> Template:
    result = await db.execute(
        select(Template).where(Template.id == template_id, _visible_to(user_id))
    )
    template = result.scalar_one_or_none()
    if template is None:
        raise NotFoundError("Template not found")
    return template


async def list_templates(db: AsyncSession, user_id: Optional[str] = None) -> List[Template]:
    result = await db.execute(
        select(Template).where(_visible_to(user_id)).order_by(Template.created_at.asc(), Template.id.asc())
    )
    return list(result.scalars().all())


async def create_template(
    db: AsyncSession,
    *,
    name: str,
    style_params: Dict[str, Any],
    owner_user_id: Optional[str] = None,
    parent_template_id: Optional[str] = None,
    credit_cost: Optional[int] = None,
) -> Template:
    """Publish a template. A revision gets a new id; the parent stays untouched."""
    clean_name = str(name or "").strip()
    if not clean_name:
        raise ValidationError("Template name is required")
    if not isinstance(style_params, dict):
        raise ValidationError("style_params must be an object")
    if len(style_params) > MAX_STYLE_PARAM_KEYS:
        raise ValidationError(f"style_params supports at most {MAX_STYLE_PARAM_KEYS} keys")

    revision = 1
    if parent_template_id:
        try:
            parent = await get_template(db, parent_template_id, owner_user_id)
        except NotFoundError as exc:
            raise ValidationError("Parent template not found") from exc
        revision = int(parent.revision or 1) + 1

    cost = settings.DEFAULT_TEMPLATE_CREDIT_COST if credit_cost is None else credit_cost
    template = Template(
        id=str(uuid.uuid4()),
        name=clean_name,
        style_params=dict(style_params),
        credit_cost=max(int(cost), 0),
        revision=revision,
        parent_template_id=parent_template_id,
        owner_user_id=owner_user_id,
    )
    db.add(template)
    await db.commit()
    await db.refresh(template)
    return template


def serialize_template(template: Template) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "style_params": template.style_params or {},
        "credit_cost": int(template.credit_cost or 0),
        "revision": int(template.revision or 1),
        "parent_template_id": template.parent_template_id,
        "owner_user_id": template.owner_user_id,
        "created_at": template.created_at.isoformat() if template.created_at else None,
    }
