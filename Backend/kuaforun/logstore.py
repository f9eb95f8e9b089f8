"""
Application log store.

Services post structured log entries which are kept in the ``logs`` table and
mirrored to the process log. Records are immutable; the only way to remove
them is the retention sweep.

    POST   /logs              -> write an entry
    GET    /logs              -> filtered, paginated listing
    GET    /logs/stats        -> counts per level and per service
    GET    /logs/aggregation  -> counts grouped by level, service, hour or day
    DELETE /logs/cleanup      -> drop records older than N days

Customers get 403 on every route.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.errors import ForbiddenError
from .core.request_context import RequestContext, UserRole, require_user
from .core.responses import success_response
from .models import LogLevel, LogRecord, LogService, utcnow
from .tenancy import get_tenant_id

logger = logging.getLogger(__name__)

# Entries are mirrored here; kept apart from the module logger so operators can route them
console_logger = logging.getLogger("kuaforun.logstore.console")

DEFAULT_LOG_TENANT = "main"
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVEL_MAP = {
    LogLevel.ERROR: logging.ERROR,
    LogLevel.WARN: logging.WARNING,
    LogLevel.INFO: logging.INFO,
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.TRACE: TRACE,
}


class GroupBy(str, Enum):
    LEVEL = "level"
    SERVICE = "service"
    HOUR = "hour"
    DAY = "day"


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class LogEntryIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    level: LogLevel
    service: LogService
    message: str = Field(..., min_length=1, max_length=1000)
    context: Optional[str] = Field(None, max_length=255)
    request_id: Optional[uuid.UUID] = Field(None, alias="requestId")
    trace_id: Optional[uuid.UUID] = Field(None, alias="traceId")
    metadata: Optional[dict[str, Any]] = None


@dataclass
class LogFilters:
    tenant_id: Optional[str] = None
    level: Optional[LogLevel] = None
    service: Optional[LogService] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


def record_to_dict(record: LogRecord) -> dict:
    return {
        "id": record.id,
        "level": record.level.value,
        "service": record.service.value,
        "tenantId": record.tenant_id,
        "message": record.message,
        "context": record.context,
        "requestId": str(record.request_id) if record.request_id else None,
        "traceId": str(record.trace_id) if record.trace_id else None,
        "metadata": record.extra,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


# ────────────────────────────────────────────────────────────────
# Store
# ────────────────────────────────────────────────────────────────

class LogStore:
    """Queries over the ``logs`` table for one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _conditions(self, filters: LogFilters) -> list:
        conditions = []
        if filters.tenant_id:
            conditions.append(LogRecord.tenant_id == filters.tenant_id)
        if filters.level:
            conditions.append(LogRecord.level == filters.level)
        if filters.service:
            conditions.append(LogRecord.service == filters.service)
        if filters.start_date:
            conditions.append(LogRecord.created_at >= _as_utc(filters.start_date))
        if filters.end_date:
            conditions.append(LogRecord.created_at <= _as_utc(filters.end_date))
        if filters.search:
            conditions.append(LogRecord.message.ilike(f"%{filters.search}%"))
        return conditions

    def _mirror(self, entry: LogEntryIn, tenant_id: str) -> None:
        console_logger.log(
            LEVEL_MAP[entry.level],
            f"[{entry.service.value}] [{tenant_id}] {entry.message}",
            extra={
                "log_context": entry.context,
                "request_id": str(entry.request_id) if entry.request_id else None,
                "trace_id": str(entry.trace_id) if entry.trace_id else None,
            },
        )

    async def write(self, entry: LogEntryIn, tenant_id: Optional[str] = None) -> Optional[LogRecord]:
        """
        Persist an entry and mirror it to the process log.

        Never raises: when the insert fails the entry is still mirrored and
        None is returned.
        """
        tenant_id = tenant_id or DEFAULT_LOG_TENANT
        self._mirror(entry, tenant_id)

        record = LogRecord(
            level=entry.level,
            service=entry.service,
            tenant_id=tenant_id,
            message=entry.message,
            context=entry.context,
            request_id=entry.request_id,
            trace_id=entry.trace_id,
            extra=entry.metadata,
        )
        try:
            self.session.add(record)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(f"Failed to persist log entry for {entry.service.value}: {e}")
            return None
        return record

    async def list(self, filters: LogFilters, page: int = 1, limit: int = 20) -> dict:
        conditions = self._conditions(filters)
        total = (
            await self.session.execute(select(func.count(LogRecord.id)).where(*conditions))
        ).scalar_one()
        result = await self.session.execute(
            select(LogRecord)
            .where(*conditions)
            .order_by(LogRecord.created_at.desc(), LogRecord.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return {
            "logs": [record_to_dict(r) for r in result.scalars().all()],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": math.ceil(total / limit) if limit else 0,
            },
        }

    async def stats(self, filters: LogFilters) -> dict:
        conditions = self._conditions(filters)
        total = (
            await self.session.execute(select(func.count(LogRecord.id)).where(*conditions))
        ).scalar_one()
        by_level = await self.session.execute(
            select(LogRecord.level, func.count(LogRecord.id)).where(*conditions).group_by(LogRecord.level)
        )
        by_service = await self.session.execute(
            select(LogRecord.service, func.count(LogRecord.id))
            .where(*conditions)
            .group_by(LogRecord.service)
        )
        return {
            "total": total,
            "levelStats": [{"level": level.value, "count": count} for level, count in by_level.all()],
            "serviceStats": [
                {"service": service.value, "count": count} for service, count in by_service.all()
            ],
        }

    def _bucket(self, group_by: GroupBy):
        if group_by == GroupBy.LEVEL:
            return LogRecord.level
        if group_by == GroupBy.SERVICE:
            return LogRecord.service
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return func.date_trunc(group_by.value, LogRecord.created_at)
        fmt = "%Y-%m-%d %H:00:00" if group_by == GroupBy.HOUR else "%Y-%m-%d"
        return func.strftime(fmt, LogRecord.created_at)

    async def aggregate(self, group_by: GroupBy, filters: LogFilters) -> dict:
        bucket = self._bucket(group_by).label("bucket")
        result = await self.session.execute(
            select(bucket, func.count(LogRecord.id))
            .where(*self._conditions(filters))
            .group_by(bucket)
            .order_by(bucket)
        )
        data = []
        for group, count in result.all():
            if isinstance(group, Enum):
                group = group.value
            elif isinstance(group, datetime):
                group = group.isoformat()
            data.append({"group": group, "count": count})
        return {"groupBy": group_by.value, "data": data}

    async def purge(
        self, days_to_keep: int, tenant_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> int:
        """Delete records strictly older than ``days_to_keep`` days. Returns the count."""
        cutoff = (now or utcnow()) - timedelta(days=days_to_keep)
        stmt = delete(LogRecord).where(LogRecord.created_at < cutoff)
        if tenant_id:
            stmt = stmt.where(LogRecord.tenant_id == tenant_id)
        result = await self.session.execute(stmt)
        await self.session.commit()
        logger.info(f"Purged {result.rowcount} log records older than {cutoff.isoformat()} tenant={tenant_id}")
        return result.rowcount


# ────────────────────────────────────────────────────────────────
# Router
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/logs", tags=["logs"])


async def require_log_access(ctx: RequestContext = Depends(require_user)) -> RequestContext:
    if ctx.role == UserRole.CUSTOMER:
        raise ForbiddenError("Forbidden")
    return ctx


class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    days_to_keep: int = Field(30, alias="daysToKeep", ge=1)


@router.post("", status_code=201)
async def create_log(
    entry: LogEntryIn,
    ctx: RequestContext = Depends(require_log_access),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    record = await LogStore(session).write(entry, tenant_id)
    return success_response({"ok": True, "id": record.id if record else None})


@router.get("")
async def list_logs(
    level: Optional[LogLevel] = Query(None),
    service: Optional[LogService] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    ctx: RequestContext = Depends(require_log_access),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    filters = LogFilters(
        tenant_id=tenant_id,
        level=level,
        service=service,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    return success_response(await LogStore(session).list(filters, page, limit))


@router.get("/stats")
async def log_stats(
    service: Optional[LogService] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    ctx: RequestContext = Depends(require_log_access),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    filters = LogFilters(tenant_id=tenant_id, service=service, start_date=start_date, end_date=end_date)
    return success_response(await LogStore(session).stats(filters))


@router.get("/aggregation")
async def log_aggregation(
    group_by: GroupBy = Query(GroupBy.DAY, alias="groupBy"),
    service: Optional[LogService] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    ctx: RequestContext = Depends(require_log_access),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    filters = LogFilters(tenant_id=tenant_id, service=service, start_date=start_date, end_date=end_date)
    return success_response(await LogStore(session).aggregate(group_by, filters))


@router.delete("/cleanup")
async def cleanup_logs(
    payload: Optional[CleanupRequest] = Body(None),
    ctx: RequestContext = Depends(require_log_access),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    days_to_keep = payload.days_to_keep if payload else 30
    deleted = await LogStore(session).purge(days_to_keep, tenant_id)
    return success_response({"deletedCount": deleted, "daysToKeep": days_to_keep})
