"""
定时任务相关Schema
"""
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any


class CronJobRequest(BaseModel):
    """按任务名操作（触发 / 启动 / 停止）"""
    job_name: str


class CronActionResponse(BaseModel):
    job_name: str
    ok: bool
    message: str


class CronJobRunResponse(BaseModel):
    """任务执行记录"""
    id: int
    job_name: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    processed_items: int
    failed_items: int
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="extra")

    class Config:
        from_attributes = True


class CronJobStatistic(BaseModel):
    """按 (任务, 状态) 分组的统计"""
    job_name: str
    status: str
    count: int
    avg_duration_ms: Optional[float] = None
    avg_processed_items: Optional[float] = None


class SchedulerHealth(BaseModel):
    status: str  # healthy / degraded / unhealthy
    total_jobs: int
    running_jobs: int
    stopped_jobs: int
    jobs: Dict[str, bool]


class CronStatusResponse(BaseModel):
    """调度器状态：健康 + 最近执行 + 近 7 天统计"""
    scheduler: SchedulerHealth
    recent_history: List[CronJobRunResponse]
    weekly_statistics: List[CronJobStatistic]
