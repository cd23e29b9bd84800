"""Dolate 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dolate.api import articles, session, settings, sync
from dolate.config import get_settings
from dolate.core.runtime import build_runtime

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()

    if not app_settings.supabase_url:
        logger.warning("Supabase 未配置，远端同步将不可用")

    logger.info("正在初始化本地存储与同步服务...")
    runtime = await build_runtime(app_settings)
    app.state.runtime = runtime

    logger.info(f"Dolate 启动完成！待同步变更: {runtime.state.pending_changes}")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await runtime.close()
    app.state.runtime = None
    logger.info("Dolate 已关闭")


app = FastAPI(
    title="Dolate",
    description="稍后阅读 - 离线同步与本地缓存服务",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(session.router)
app.include_router(articles.router)
app.include_router(sync.router)
app.include_router(settings.router)


@app.get("/")
async def root() -> dict:
    """根路径."""
    return {
        "name": "Dolate",
        "version": "0.1.0",
        "description": "稍后阅读 - 离线同步与本地缓存",
    }


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dolate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
