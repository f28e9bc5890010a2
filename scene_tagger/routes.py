"""FastAPI endpoints under /api.

Host state is posted as plain JSON by the chat front-end:

    {"context": {...}, "power_user": {...}, "user_avatar": "...", "avatars": {...}}

Generation runs against the configured HttpGenerator. /describe is guarded by
the app's GenerationTrigger: a second request while one is in flight gets 409.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from scene_tagger.context import capture_context_snapshot
from scene_tagger.host import HostBridge
from scene_tagger.pipeline import TriggerBusy, describe
from scene_tagger.models import PromptStyle

router = APIRouter()


# ── Request models ───────────────────────────────────────


class HostState(BaseModel):
    context: dict[str, Any] | None = None
    power_user: dict[str, Any] | None = None
    user_avatar: str | None = None
    avatars: dict[str, str] = {}


class DescribeBody(HostState):
    style: PromptStyle | None = None


class UpdateSettings(BaseModel):
    prompt: str | None = None
    scene: str | None = None
    character: str | None = None
    user: str | None = None


def _bridge(state: HostState, generator: Any = None) -> HostBridge:
    backends = {}
    if generator is not None:
        backends = {
            "generate_raw": generator.generate_raw,
            "generate_quiet_prompt": generator.generate_quiet_prompt,
        }
    return HostBridge.from_state(
        context=state.context,
        power_user=state.power_user,
        user_avatar=state.user_avatar,
        avatars=state.avatars,
        **backends,
    )


# ── Endpoints ────────────────────────────────────────────


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get the persisted directive and last generated descriptions."""
    return request.app.state.store.load().model_dump()


@router.patch("/settings")
async def update_settings(request: Request, body: UpdateSettings):
    """Update settings fields (partial merge)."""
    return request.app.state.store.save(body.model_dump(exclude_none=True)).model_dump()


@router.post("/snapshot")
async def snapshot(body: HostState):
    """Resolve posted host state into a context snapshot without generating."""
    return capture_context_snapshot(_bridge(body)).model_dump()


@router.post("/describe")
async def describe_scene(request: Request, body: DescribeBody):
    """Generate scene / character / user descriptions and store them."""
    state = request.app.state
    style = body.style or state.config.prompt_style
    host = _bridge(body, state.generator)
    try:
        settings = await state.trigger.run(lambda: describe(host, state.store, style))
    except TriggerBusy as e:
        raise HTTPException(409, str(e))
    if settings is None:
        return {"applied": False, "settings": state.store.load().model_dump()}
    return {"applied": True, "settings": settings.model_dump()}
