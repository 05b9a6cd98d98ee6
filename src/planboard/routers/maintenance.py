from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from ..consistency import audit
from ..deps import get_engine
from ..migration import migrate_legacy
from ..schemas import LegacyData, Snapshot
from ..snapshot import export_snapshot, import_snapshot
from ..sync_engine import SyncEngine

router = APIRouter(
    prefix="/api/v1/maintenance",
    tags=["maintenance"],
)


# PUBLIC_INTERFACE
@router.get(
    "/audit",
    summary="Consistency Audit",
    description="Compare every placement cache with the position index and report drift or dangling references.",
)
async def run_audit(engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return (await audit(engine.storage)).to_dict()


@router.get("/export", summary="Export Snapshot")
async def export(engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    return await export_snapshot(engine.storage)


@router.post("/import", summary="Import Snapshot")
async def import_(
    payload: Snapshot,
    strict: bool = Query(True, description="Reject snapshots that fail the consistency audit"),
    engine: SyncEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Replace all data with the snapshot."""
    report = await import_snapshot(engine.storage, payload.model_dump(), strict=strict)
    return report.to_dict()


@router.post("/migrate-legacy", summary="Migrate Legacy Data")
async def migrate(payload: LegacyData, engine: SyncEngine = Depends(get_engine)) -> Dict[str, Any]:
    report = await migrate_legacy(engine, payload.to_app_data())
    return report.to_dict()
