"""Loop dashboard routes.

Dashboards treat "nothing there" as an empty answer: an unknown agent name
returns an empty list, never a 404.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from switchboard.db.engine import get_db
from switchboard.schemas.loop import (
    AgentBreakdown,
    AggregationResult,
    DailySummary,
    LoopAlertRead,
    LoopMetricRead,
    UnresolvedAlert,
)
from switchboard.services.loop_metrics import LoopAccounting

router = APIRouter()


def _svc(db: AsyncSession = Depends(get_db)) -> LoopAccounting:
    return LoopAccounting(db)


@router.get("/loops/dashboard", response_model=list[LoopMetricRead])
async def loop_dashboard(
    agent_name: Optional[str] = Query(None),
    period: Optional[str] = Query(None, pattern=r"^(hourly|daily)$"),
    limit: int = Query(24, ge=1, le=500),
    svc: LoopAccounting = Depends(_svc),
):
    return await svc.get_loop_dashboard(agent_name=agent_name, period=period, limit=limit)


@router.get("/loops/alerts", response_model=list[LoopAlertRead])
async def active_loop_alerts(
    agent_name: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    svc: LoopAccounting = Depends(_svc),
):
    return await svc.get_active_alerts(agent_name=agent_name, limit=limit)


@router.get("/loops/summary", response_model=DailySummary)
async def loop_summary(svc: LoopAccounting = Depends(_svc)):
    return await svc.get_daily_summary()


@router.get("/loops/breakdown", response_model=list[AgentBreakdown])
async def loop_breakdown(
    since_days: int = Query(7, ge=1, le=90),
    svc: LoopAccounting = Depends(_svc),
):
    return await svc.get_agent_breakdown(since_days=since_days)


@router.get("/loops/unresolved", response_model=list[UnresolvedAlert])
async def unresolved_alerts(
    limit: int = Query(50, ge=1, le=200),
    svc: LoopAccounting = Depends(_svc),
):
    return await svc.get_unresolved_alerts(limit=limit)


@router.post("/loops/aggregate/hourly", response_model=AggregationResult)
async def run_hourly_aggregation(svc: LoopAccounting = Depends(_svc)):
    return await svc.aggregate_hourly()


@router.post("/loops/aggregate/daily", response_model=AggregationResult)
async def run_daily_aggregation(svc: LoopAccounting = Depends(_svc)):
    return await svc.aggregate_daily()
