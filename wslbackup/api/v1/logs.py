"""
Endpoints serving the in-memory log buffer.
"""
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel
from typing import List, Optional, Dict, Any

router = APIRouter()


class LogEntry(BaseModel):
    """One buffered log line."""
    timestamp: str
    level: str
    logger: str
    message: str
    line: str
    details: Optional[Dict[str, Any]] = None
    exception: Optional[str] = None


class LogsResponse(BaseModel):
    """Page of buffered log lines, newest first."""
    logs: List[LogEntry]
    total: int
    offset: int
    limit: int


class LogStats(BaseModel):
    """Buffer size and per-level counts."""
    total: int
    max_records: int
    by_level: Dict[str, int]


@router.get("", response_model=LogsResponse)
async def get_logs(
    request: Request,
    level: Optional[str] = Query(None, description="Filter by level tag (INFO, WARN, ERROR, SUCCESS)"),
    logger: Optional[str] = Query(None, description="Filter by logger name"),
    search: Optional[str] = Query(None, description="Search in log messages"),
    limit: int = Query(100, ge=1, le=1000, description="Number of logs to return"),
    offset: int = Query(0, ge=0, description="Number of logs to skip")
):
    """
    Get recent application logs with optional filtering.

    Returns most recent logs first.
    """
    handler = request.app.state.log_handler
    logs = handler.get_logs(level=level, logger=logger, search=search, limit=limit, offset=offset) if handler else []

    return {
        "logs": logs,
        "total": len(logs),
        "offset": offset,
        "limit": limit
    }


@router.get("/stats", response_model=LogStats)
async def get_log_stats(request: Request):
    """Get in-memory log buffer statistics."""
    handler = request.app.state.log_handler
    if handler is None:
        return {"total": 0, "max_records": 0, "by_level": {}}
    return handler.get_stats()
