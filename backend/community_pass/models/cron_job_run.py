"""
定时任务执行记录：每次执行一行，只追加
"""
from sqlalchemy import Column, Integer, String, Text, JSON, Index
from community_pass.core.database import Base, UTCDateTime, utc_now, append_only


@append_only
class CronJobRun(Base):
    """任务执行记录表"""
    __tablename__ = "cron_job_runs"
    __table_args__ = (
        Index("ix_cron_job_runs_job_started", "job_name", "started_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, index=True)  # success, failed
    started_at = Column(UTCDateTime, nullable=False, default=utc_now)
    completed_at = Column(UTCDateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    processed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    extra = Column("metadata", JSON, nullable=True)  # 汇总计数等
