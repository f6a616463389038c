import pytest

from services.errors import NotFoundError, ValidationError
from services.templates import create_template, get_template, list_templates
from services.users import ensure_user


@pytest.mark.asyncio
async def test_builtin_templates_are_visible_to_everyone(db):
    templates = await list_templates(db, "anyone")

    assert {"classic", "bold", "minimal"} <= {template.id for template in templates}
    classic = await get_template(db, "classic")
    assert classic.credit_cost == 1
    assert classic.style_params["composition"] == "centered"


@pytest.mark.asyncio
async def test_user_templates_are_private_to_their_owner(db):
    await ensure_user(db, "designer")
    template = await create_template(
        db,
        name="Neon Gaming",
        style_params={"colorScheme": "neon", "mood": "hype"},
        owner_user_id="designer",
    )

    assert template.revision == 1
    assert template.credit_cost == 1
    assert (await get_template(db, template.id, "designer")).name == "Neon Gaming"
    with pytest.raises(NotFoundError):
        await get_template(db, template.id, "someone-else")
    assert template.id not in {item.id for item in await list_templates(db, "someone-else")}


@pytest.mark.asyncio
async def test_revision_is_a_new_template_and_parent_is_unchanged(db):
    await ensure_user(db, "designer")
    parent = await create_template(db, name="Clean", style_params={"mood": "calm"}, owner_user_id="designer")

    revision = await create_template(
        db,
        name="Clean v2",
        style_params={"mood": "bright"},
        owner_user_id="designer",
        parent_template_id=parent.id,
    )

    assert revision.id != parent.id
    assert revision.revision == 2
    assert revision.parent_template_id == parent.id
    reloaded = await get_template(db, parent.id, "designer")
    assert reloaded.style_params == {"mood": "calm"}
    assert reloaded.revision == 1


@pytest.mark.asyncio
async def test_template_validation(db):
    with pytest.raises(ValidationError):
        await create_template(db, name="  ", style_params={})
    with pytest.raises(ValidationError):
        await create_template(db, name="Ghost", style_params={}, parent_template_id="missing")
