from fastapi import FastAPI

from backend.app.api.error_handlers import register_error_handlers
from backend.app.api.v1.router import router as v1_router
from backend.app.core.config import settings
from backend.app.core.logging_setup import configure_logging

configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="Almoxarifado", version="0.1.0")
register_error_handlers(app)
app.include_router(v1_router, prefix="/v1")
