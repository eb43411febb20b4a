from __future__ import annotations

import atexit
import asyncio
import logging
from typing import Any, Dict, List

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from link_integrity.config import load_config
from link_integrity.db import close_database, init_metadata_schema, open_database
from link_integrity.dialects import get_query_builder
from link_integrity.integrity import LinkIntegrityService


cfg = load_config()
logging.basicConfig(level=getattr(logging, cfg.log_level, logging.INFO))

mcp = FastMCP(name="Link Integrity")

database = open_database(cfg)
service = LinkIntegrityService(database, get_query_builder(cfg.dialect), fix_batch_size=cfg.fix_batch_size)

_startup_lock = asyncio.Lock()
_started = False


async def _startup_tasks() -> None:
    if cfg.dialect == "sqlite":
        await init_metadata_schema(database)
    logging.info("Storage: dialect=%s", cfg.dialect)
    logging.info("Repair batch size: %s", cfg.fix_batch_size)


async def _ensure_started() -> None:
    global _started
    async with _startup_lock:
        if _started:
            return
        await _startup_tasks()
        _started = True


async def _run_check(base_id: str) -> Dict[str, Any]:
    await _ensure_started()
    result = await service.link_integrity_check(base_id)
    return result.to_payload()


async def _run_fix(base_id: str) -> List[Dict[str, Any]]:
    await _ensure_started()
    fixed = await service.link_integrity_fix(base_id)
    return [issue.to_payload() for issue in fixed]


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, ValueError):
        status = 400
    elif isinstance(exc, LookupError):
        status = 404
    else:
        logging.error("Link integrity request failed", exc_info=exc)
        return JSONResponse({"message": "Internal server error"}, status_code=500)
    return JSONResponse({"message": str(exc)}, status_code=status)


@mcp.custom_route("/integrity/base/{baseId}/link-check", methods=["GET"])
async def link_check_route(request: Request) -> JSONResponse:
    base_id = request.path_params["baseId"]
    try:
        payload = await _run_check(base_id)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(payload)


@mcp.custom_route("/integrity/base/{baseId}/link-fix", methods=["POST"])
async def link_fix_route(request: Request) -> JSONResponse:
    base_id = request.path_params["baseId"]
    try:
        payload = await _run_fix(base_id)
    except Exception as exc:
        return _error_response(exc)
    return JSONResponse(payload)


@mcp.tool
async def link_check(base_id: str) -> Dict[str, Any]:
    """Report link fields of a base whose foreign keys or cached link values are inconsistent."""
    return await _run_check(base_id)


@mcp.tool
async def link_fix(base_id: str) -> List[Dict[str, Any]]:
    """Repair dangling foreign keys and drifted link values in a base; returns what was fixed."""
    return await _run_fix(base_id)


def _sync_cleanup() -> None:
    """Best-effort shutdown of the database pool on exit."""
    try:
        asyncio.run(close_database(database))
    except Exception:
        logging.warning("Shutdown cleanup failed", exc_info=True)


atexit.register(_sync_cleanup)


def main() -> None:
    if cfg.transport == "http":
        mcp.run(transport="http", host=cfg.http_host, port=cfg.http_port)
    else:
        mcp.run()


if __name__ == "__main__":
    main()
