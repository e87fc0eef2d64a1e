from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from floorline.api.routes import router as api_router
from floorline.core.config import get_settings
from floorline.core.database import SessionLocal, get_db
from floorline.core.events import event_bus
from floorline.logging import configure_logging
from floorline.middleware.correlation_id import CorrelationIdMiddleware
from floorline.middleware.request_logging import RequestLoggingMiddleware
from floorline.otel import get_fastapi_server_request_hook, setup_otel
from floorline.workflows.emitters import workflow_event_emitter
from floorline.workflows.engine import workflow_engine
from floorline.workflows.scheduler import workflow_scheduler


configure_logging()
logger = logging.getLogger("floorline.lifecycle")


@contextmanager
def _workflow_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    workflow_engine.session_scope = _workflow_session_scope
    workflow_event_emitter.session_scope = _workflow_session_scope
    workflow_event_emitter.register(event_bus)
    logger.info("api_started")
    try:
        yield
    finally:
        workflow_event_emitter.unregister(event_bus)
        workflow_scheduler.shutdown()


app = FastAPI(title="Floorline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
