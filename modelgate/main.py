import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from modelgate.api.routes import router as api_router
from modelgate.budget.governor import RuntimeBudgetGovernor
from modelgate.budget.store import UsageStore
from modelgate.config import settings
from modelgate.database import async_session, engine, init_db
from modelgate.llm.router import ModelRouter
from modelgate.observability.logger import get_logger, setup_logging

setup_logging(settings.log_level)
log = get_logger("main")

# Shared application state, accessed by API routes
app_state = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("modelgate_starting")
    os.makedirs(settings.data_dir, exist_ok=True)

    # 1. Create database tables
    await init_db()
    log.info("database_initialized")

    # 2. Governor first: the router reads every directive from it
    governor = RuntimeBudgetGovernor(UsageStore(async_session))
    state = await governor.start()

    # 3. Router; fails fast when no provider has credentials
    router = ModelRouter(governor)

    app_state.update({
        "governor": governor,
        "router": router,
        "session_factory": async_session,
    })

    log.info(
        "modelgate_ready",
        providers=router.get_available_providers(),
        severity=state.current_severity,
        profile=state.current_profile,
        fallback_mode=state.fallback_mode,
        storage_degraded=state.storage_degraded,
    )

    yield

    log.info("modelgate_shutting_down")
    app_state.clear()
    await engine.dispose()


app = FastAPI(title="modelgate", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


def run():
    uvicorn.run("modelgate.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
