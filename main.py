from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import logging
import os
import time

from db import SessionLocal, init_db
from errors import LifecycleError
from routers import ALL_ROUTERS
import sequencer

app = FastAPI(title="Device Lifecycle API")

init_db()
with SessionLocal() as _db:
    sequencer.ensure_counters(_db)

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=os.getenv("APP_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    logger.info("lifecycle_error code=%s path=%s detail=%s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


for router in ALL_ROUTERS:
    app.include_router(router)


@app.get("/")
def root():
    return {"message": "Device Lifecycle API", "docs": "/docs"}
