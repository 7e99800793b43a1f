"""
Preset API Routes.

Endpoints for browsing the preset registry.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException

from nodeflow.api.schemas import ErrorResponse, PresetInfo, PresetListResponse
from nodeflow.presets import preset_registry


router = APIRouter(prefix="/presets", tags=["Presets"])


@router.get("", response_model=PresetListResponse)
async def list_presets(q: Optional[str] = None, type: Optional[str] = None) -> PresetListResponse:
    """
    List presets.

    Filter with ``q`` (matches label, description and tags) and ``type``.
    """
    presets = preset_registry.search(q) if q else preset_registry.all()
    if type:
        presets = [p for p in presets if p.node_type == type]
    return PresetListResponse(
        presets=[PresetInfo(**p.to_dict()) for p in presets],
        total=len(presets),
    )


@router.get(
    "/{preset_id}",
    response_model=PresetInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_preset(preset_id: str) -> PresetInfo:
    """Get a specific preset."""
    preset = preset_registry.get(preset_id)
    if not preset:
        raise HTTPException(status_code=404, detail=f"Preset '{preset_id}' not found")
    return PresetInfo(**preset.to_dict())
