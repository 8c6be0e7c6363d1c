"""
定时任务管理API（需管理令牌）
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from community_pass.api.deps import get_cron_scheduler, require_admin
from community_pass.schemas.cron import (
    CronActionResponse,
    CronJobRequest,
    CronJobRunResponse,
    CronJobStatistic,
    CronStatusResponse,
)
from community_pass.services.cron_scheduler import CronScheduler

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/trigger", response_model=CronActionResponse)
async def trigger_job(
    body: CronJobRequest,
    scheduler: CronScheduler = Depends(get_cron_scheduler),
):
    """手动执行任务；未知任务或该任务正在执行时返回 400"""
    ok = await scheduler.trigger_job(body.job_name)
    if not ok:
        raise HTTPException(status_code=400, detail=f"任务 {body.job_name} 不存在或正在执行")
    return CronActionResponse(job_name=body.job_name, ok=True, message="任务已执行")


@router.post("/start", response_model=CronActionResponse)
async def start_job(
    body: CronJobRequest,
    scheduler: CronScheduler = Depends(get_cron_scheduler),
):
    if not scheduler.start_job(body.job_name):
        raise HTTPException(status_code=400, detail=f"任务 {body.job_name} 不存在")
    return CronActionResponse(job_name=body.job_name, ok=True, message="任务已启动")


@router.post("/stop", response_model=CronActionResponse)
async def stop_job(
    body: CronJobRequest,
    scheduler: CronScheduler = Depends(get_cron_scheduler),
):
    if not scheduler.stop_job(body.job_name):
        raise HTTPException(status_code=400, detail=f"任务 {body.job_name} 不存在")
    return CronActionResponse(job_name=body.job_name, ok=True, message="任务已停止")


@router.get("/status", response_model=CronStatusResponse)
async def get_status(scheduler: CronScheduler = Depends(get_cron_scheduler)):
    """调度器健康状态、最近 10 次执行、近 7 天统计"""
    history = await scheduler.get_job_history(limit=10)
    statistics = await scheduler.get_job_statistics(days=7)
    return CronStatusResponse(
        scheduler=scheduler.health_check(),
        recent_history=[CronJobRunResponse.model_validate(run) for run in history],
        weekly_statistics=[CronJobStatistic(**row) for row in statistics],
    )


@router.get("/history", response_model=List[CronJobRunResponse])
async def get_history(
    job_name: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    scheduler: CronScheduler = Depends(get_cron_scheduler),
):
    return await scheduler.get_job_history(job_name, limit)


@router.get("/statistics", response_model=List[CronJobStatistic])
async def get_statistics(
    days: int = Query(30, ge=1, le=365),
    scheduler: CronScheduler = Depends(get_cron_scheduler),
):
    return await scheduler.get_job_statistics(days)
