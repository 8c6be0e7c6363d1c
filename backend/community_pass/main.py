"""
FastAPI主应用入口
"""
import logging
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from community_pass.core.config import settings
from community_pass.core.database import engine, Base, AsyncSessionLocal
from community_pass.core.exceptions import CommunityPassError
from community_pass.api.v1 import api_router
from community_pass.core.logging import setup_logging
from community_pass.core.health import check_db, check_redis, check_ledger
from community_pass.services.cron_job_service import CronJobService
from community_pass.services.cron_scheduler import CronScheduler
from community_pass.services.ledger_client import HttpLedgerClient
from community_pass.services.notifier import RedisNotifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    setup_logging()
    # 创建数据库表
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.ledger = HttpLedgerClient()
    app.state.notifier = RedisNotifier()
    app.state.cron_scheduler = None
    if settings.CRON_ENABLED and settings.CRON_BACKEND == "inprocess":
        job_service = CronJobService(AsyncSessionLocal, app.state.ledger, app.state.notifier)
        app.state.cron_scheduler = CronScheduler(job_service)
        app.state.cron_scheduler.initialize_cron_jobs()
    else:
        logger.info("进程内定时任务未启用 (CRON_ENABLED=%s, CRON_BACKEND=%s)", settings.CRON_ENABLED, settings.CRON_BACKEND)

    yield

    # 关闭时执行
    if app.state.cron_scheduler is not None:
        await app.state.cron_scheduler.shutdown()
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="社区 NFT 会员订阅：mint、续费、访问校验、定时任务与收入分析",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# GZip压缩
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """为每个请求生成或透传 X-Request-ID，并写入 request.state"""
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


def _error_response(detail: str, code: str, request_id: str | None = None) -> dict:
    body = {"detail": detail, "code": code}
    if request_id:
        body["request_id"] = request_id
    return body


@app.exception_handler(CommunityPassError)
async def domain_exception_handler(request: Request, exc: CommunityPassError):
    """业务异常：按异常类型映射状态码"""
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_response(detail=str(exc), code=exc.code, request_id=rid),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """统一 HTTP 异常响应格式"""
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_response(
            detail=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            code="http_error",
            request_id=rid,
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """422 校验错误统一格式"""
    rid = getattr(request.state, "request_id", None)
    errs = exc.errors()
    detail = errs[0].get("msg", "请求参数校验失败") if errs else "请求参数校验失败"
    body = _error_response(detail=detail, code="validation_error", request_id=rid)
    body["errors"] = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errs]
    return JSONResponse(status_code=422, content=body)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """未捕获异常统一格式"""
    rid = getattr(request.state, "request_id", None)
    logger.exception("未捕获异常 request_id=%s: %s", rid, exc)
    return JSONResponse(
        status_code=500,
        content=_error_response(
            detail="服务器内部错误",
            code="internal_error",
            request_id=rid,
        ),
    )


# 注册路由
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": settings.PROJECT_NAME,
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
async def health_check(request: Request):
    """健康检查：返回各依赖连通状态"""
    db_ok, db_msg = await check_db()
    redis_ok, redis_msg = check_redis()
    ledger_ok, ledger_msg = await check_ledger(getattr(request.app.state, "ledger", None))
    scheduler = getattr(request.app.state, "cron_scheduler", None)
    all_ok = db_ok and redis_ok and ledger_ok
    return JSONResponse(
        content={
            "status": "healthy" if all_ok else "degraded",
            "service": "community-pass-api",
            "dependencies": {
                "database": {"ok": db_ok, "message": db_msg},
                "redis": {"ok": redis_ok, "message": redis_msg},
                "ledger": {"ok": ledger_ok, "message": ledger_msg},
            },
            "scheduler": scheduler.health_check() if scheduler is not None else None,
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "community_pass.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_excludes=["**/__pycache__/**", "**/*.pyc"],
    )
