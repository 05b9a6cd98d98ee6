from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from .consistency import AuditReport, audit
from .entity_store import utc_now
from .errors import EntityValidationError
from .repositories import TABLE_KEYS, Storage

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


# PUBLIC_INTERFACE
async def export_snapshot(storage: Storage) -> Dict[str, Any]:
    """Every table as one JSON-ready document."""
    async with storage.transaction():
        tables = {name: await storage.table(name).all() for name in TABLE_KEYS}
    return {"version": SNAPSHOT_VERSION, "exported_at": utc_now(), "tables": tables}


# PUBLIC_INTERFACE
async def import_snapshot(storage: Storage, snapshot: Mapping[str, Any], strict: bool = True) -> AuditReport:
    """
    Replace the store contents with a snapshot.

    The import runs in one transaction and is audited before it commits.
    With strict=True an inconsistent snapshot is rejected and nothing changes.
    """
    if snapshot.get("version") != SNAPSHOT_VERSION:
        raise EntityValidationError(f"Unsupported snapshot version: {snapshot.get('version')!r}", field="version")
    tables = snapshot.get("tables")
    if not isinstance(tables, Mapping):
        raise EntityValidationError("snapshot has no tables", field="tables")
    unknown = set(tables) - set(TABLE_KEYS)
    if unknown:
        raise EntityValidationError(f"Unknown tables: {', '.join(sorted(unknown))}", field="tables")

    async with storage.transaction():
        for name in TABLE_KEYS:
            table = storage.table(name)
            await table.clear()
            for record in tables.get(name) or []:
                try:
                    await table.put(dict(record))
                except ValueError as exc:
                    raise EntityValidationError(str(exc), field=name) from exc
        report = await audit(storage)
        if strict and not report.ok:
            raise EntityValidationError("snapshot failed the consistency audit", field="tables")

    logger.info("Imported snapshot: %s", report.checked)
    return report
