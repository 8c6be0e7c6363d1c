"""
应用配置：从环境变量读取配置
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """应用配置类"""

    # 项目根目录
    PROJECT_ROOT: Path = Path(__file__).parent.parent.parent

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT.parent / ".env"),  # 从项目根目录读取 .env
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API配置
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "社区 NFT 会员服务"
    CORS_ORIGINS: List[str] = ["*"]  # CORS允许的源
    ADMIN_API_TOKEN: str = ""  # 为空时 cron 管理接口不校验 X-Admin-Token

    # 数据库配置（默认本地 SQLite，生产环境使用 postgresql+asyncpg）
    DATABASE_URL: str = "sqlite+aiosqlite:///./community_pass.db"
    DATABASE_ECHO: bool = False

    # Redis配置
    REDIS_URL: str = "redis://localhost:6379/0"

    # 缓存配置（分析类接口，key 前缀区分）
    CACHE_ENABLED: bool = True
    CACHE_KEY_PREFIX: str = "cache:"
    CACHE_TTL_STATS: int = 60          # 收益/趋势统计 60 秒

    # Celery配置（不填则与 REDIS_URL 一致，只维护一份 Redis 地址即可）
    CELERY_BROKER_URL: str = ""
    CELERY_RESULT_BACKEND: str = ""

    # 链上服务（账本）配置
    LEDGER_API_URL: str = "http://localhost:8545"
    LEDGER_API_KEY: str = ""
    LEDGER_TIMEOUT_SECONDS: float = 30.0  # mint/renew 超时按失败处理（fail-closed）

    # 会员周期配置
    MEMBERSHIP_BILLING_PERIOD_DAYS: int = 30
    MEMBERSHIP_DEFAULT_CURRENCY: str = "USDC"
    RENEWAL_MAX_ATTEMPTS: int = 3  # 续费写库遇到并发修改时的最大重试次数
    RENEWAL_REMINDER_DAYS: int = 3  # 到期前 N 天发送续费提醒
    AUTO_RENEW_LOOKAHEAD_HOURS: int = 24  # 到期前 N 小时内自动续费
    AUTO_RENEW_DISABLE_ON_FAILURE: bool = True  # 自动续费失败后关闭该会员的自动续费

    # 定时任务配置：inprocess=随 API 进程启动，celery=由 celery beat 调度
    CRON_ENABLED: bool = True
    CRON_BACKEND: str = "inprocess"
    CRON_TIMEZONE: str = "UTC"
    CRON_CHECK_EXPIRED: str = "0 * * * *"       # 每小时
    CRON_RENEWAL_REMINDERS: str = "0 9 * * *"   # 每天 09:00
    CRON_AUTO_RENEW: str = "0 */6 * * *"        # 每 6 小时
    CRON_DAILY_ANALYTICS: str = "0 */4 * * *"   # 每 4 小时
    CRON_RUN_ALL_DAILY: str = "0 2 * * *"       # 每天 02:00
    CRON_LOCK_TIMEOUT_SECONDS: int = 3600  # celery 模式下同名任务互斥锁超时

    # 通知配置（续费提醒通过 Redis 频道投递，由通知服务消费）
    NOTIFY_CHANNEL: str = "notifications:membership"

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Path = PROJECT_ROOT / "logs" / "app.log"

    @property
    def cron_schedules(self) -> dict:
        """任务名 -> crontab 表达式"""
        return {
            "check-expired-memberships": self.CRON_CHECK_EXPIRED,
            "send-renewal-reminders": self.CRON_RENEWAL_REMINDERS,
            "auto-renew-memberships": self.CRON_AUTO_RENEW,
            "update-daily-analytics": self.CRON_DAILY_ANALYTICS,
            "run-all-daily-jobs": self.CRON_RUN_ALL_DAILY,
        }


# 创建全局配置实例
settings = Settings()
