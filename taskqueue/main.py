import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from worker.handlers import register_builtin
from worker.pool import WorkerPool

from .config import settings
from .log_config import configure_logging
from .routers import tasks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    app.state.pool = None
    if settings.run_workers_in_api:
        pool = WorkerPool(tasks.get_queue())
        register_builtin(pool.registry)
        # start() reconciles the store first, keep it off the event loop
        await run_in_threadpool(pool.start)
        app.state.pool = pool
        logger.info("Worker pool running inside the API process")
    try:
        yield
    finally:
        if app.state.pool is not None:
            await run_in_threadpool(app.state.pool.stop)


app = FastAPI(title="Task Queue API", version="1.0.0", lifespan=lifespan)
app.include_router(tasks.router)
