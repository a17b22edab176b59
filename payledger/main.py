import logging

from fastapi import FastAPI

from payledger import config
from payledger.admin.routes import admin_router
from payledger.api import payment_router
from payledger.api.user_router import router as user_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="payledger")

app.include_router(admin_router)
app.include_router(payment_router.router)
app.include_router(user_router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok", "gateway": config.PAYMENT_GATEWAY}
