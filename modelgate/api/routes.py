from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from modelgate.api.schemas import BudgetProfileUpdate, CompletionBody, CompletionResponse, RoutingModeUpdate
from modelgate.budget.models import FALLBACK_MODES, PROFILES
from modelgate.llm.router import AllProvidersUnavailable
from modelgate.observability.logger import get_logger

log = get_logger("api")

router = APIRouter()


def get_app_state():
    """Get shared app state, set during startup."""
    from modelgate.main import app_state

    return app_state


@router.get("/health")
async def health():
    state = get_app_state()
    directive = state["governor"].get_routing_directive()
    return {
        "status": "ok",
        "providers": state["router"].get_available_providers(),
        "severity": directive.severity,
        "profile": directive.profile,
        "storage_degraded": state["governor"].storage_degraded,
    }


@router.get("/routing/telemetry")
async def get_routing_telemetry(session_id: str = None, limit: int = 30):
    state = get_app_state()
    return await state["router"].get_telemetry(session_id=session_id, event_limit=limit)


@router.post("/routing/mode")
async def set_routing_mode(body: RoutingModeUpdate):
    if body.mode not in FALLBACK_MODES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid mode '{body.mode}'. Expected one of: {', '.join(FALLBACK_MODES)}",
        )
    state = get_app_state()
    await state["router"].set_fallback_mode(body.mode)
    log.info("routing_mode_updated", mode=body.mode)
    return {
        "message": f"Routing mode set to {body.mode}",
        "snapshot": await state["router"].get_telemetry(),
    }


@router.get("/routing/candidates")
async def get_routing_candidates():
    state = get_app_state()
    directive = state["governor"].get_routing_directive()
    selected = {c.key for c in state["router"].select_candidates(directive)}
    return {
        "profile": directive.profile,
        "candidates": [
            {**info, "selectable": f"{info['provider']}/{info['model']}" in selected}
            for info in state["router"].get_candidate_info()
        ],
    }


@router.get("/budget/snapshot")
async def get_budget_snapshot(session_id: str = None, limit: int = 50):
    state = get_app_state()
    return await state["governor"].get_snapshot(session_id=session_id, event_limit=limit)


@router.post("/budget/profile")
async def set_budget_profile(body: BudgetProfileUpdate):
    if body.profile is not None and body.profile not in PROFILES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid profile '{body.profile}'. Expected one of: {', '.join(PROFILES)} or null",
        )
    state = get_app_state()
    directive = await state["governor"].set_manual_profile(body.profile)
    message = f"Budget profile pinned to {body.profile}" if body.profile else "Budget profile pin released"
    return {"message": message, "directive": directive.model_dump(mode="json")}


@router.post("/budget/reset")
async def reset_budget():
    state = get_app_state()
    directive = await state["governor"].reset_policy_state()
    return {"message": "Runtime budget policy state reset", "directive": directive.model_dump(mode="json")}


@router.get("/budget/events")
async def get_budget_events(limit: int = 50):
    state = get_app_state()
    return await state["governor"].get_recent_events(limit)


@router.post("/completions", response_model=CompletionResponse)
async def create_completion(body: CompletionBody):
    state = get_app_state()
    try:
        response = await state["router"].complete(
            messages=body.messages,
            session_id=body.session_id,
            temperature=body.temperature,
            max_tokens=body.max_tokens,
        )
    except AllProvidersUnavailable as e:
        return JSONResponse(status_code=503, content=e.to_dict())
    return CompletionResponse(
        content=response.content,
        model=response.model,
        provider=response.provider,
        tokens_used=response.total_tokens,
        finish_reason=response.finish_reason,
    )
