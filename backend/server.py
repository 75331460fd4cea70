"""
Sales CRM - API Backend

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from services.activity_logger import ActivityRecorder
from services.assignment_rotator import AssignmentRotator
from services.channel_rotator import ChannelRotator
from services.errors import CRMError, PartialFailureError
from services.followup_scheduler import FollowUpScheduler
from services.lead_service import LeadService
from services.message_dispatch import MessageDispatcher
from services.templates import TemplateLibrary
from services.notifications import MongoNotificationSink

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("sales_crm")


async def crm_error_handler(request: Request, exc: CRMError):
    if isinstance(exc, PartialFailureError):
        logger.error(f"[API] {request.url.path} partial failure at {exc.step}: {exc.message}")
    elif exc.http_status >= 500:
        logger.error(f"[API] {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def wire_services(app: FastAPI, database, sender=None):
    """Instancie les services sur app.state (une seule instance par app)"""
    notifier = MongoNotificationSink(database)
    activities = ActivityRecorder(database)
    followups = FollowUpScheduler(database, activities, notifier)
    channels = ChannelRotator(database)
    leads = LeadService(database, AssignmentRotator(database), followups, activities, notifier)

    app.state.db = database
    app.state.notifier = notifier
    app.state.activities = activities
    app.state.followups = followups
    app.state.channels = channels
    app.state.leads = leads
    app.state.templates = TemplateLibrary(database)
    app.state.dispatcher = MessageDispatcher(database, channels, leads, activities, app.state.templates)
    app.state.sender = sender


def create_app(database=None, sender=None, start_scheduler: bool = True) -> FastAPI:
    if database is None:
        from config import db as database

    app = FastAPI(
        title="Sales CRM",
        description="Attribution des leads, relances et rotation des numéros",
        version="1.0.0"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CRMError, crm_error_handler)
    wire_services(app, database, sender)

    # ==================== IMPORT DES ROUTES ====================

    from routes import auth, leads, followups, channels, settings, templates

    app.include_router(auth.router, prefix="/api")
    app.include_router(leads.router, prefix="/api")
    app.include_router(followups.router, prefix="/api")
    app.include_router(channels.router, prefix="/api")
    app.include_router(settings.router, prefix="/api")
    app.include_router(templates.router, prefix="/api")

    @app.get("/")
    async def root():
        return {"name": "Sales CRM API", "version": "1.0.0", "status": "running", "docs": "/docs"}

    # ==================== STARTUP ====================

    @app.on_event("startup")
    async def startup():
        await ensure_indexes(database)
        if start_scheduler:
            from scheduler_service import task_scheduler
            task_scheduler.configure(app.state.followups, app.state.notifier)
            task_scheduler.start()
        logger.info("🚀 Sales CRM démarré")

    @app.on_event("shutdown")
    async def shutdown():
        if start_scheduler:
            from scheduler_service import task_scheduler
            task_scheduler.stop()

    return app


async def ensure_indexes(database):
    await database.users.create_index("id", unique=True)
    await database.users.create_index("email", unique=True)
    await database.sessions.create_index("token")
    await database.sessions.create_index("expires_at")
    await database.leads.create_index("id", unique=True)
    await database.leads.create_index("phone")
    await database.leads.create_index("message_sid")
    await database.leads.create_index("assigned_to")
    await database.followups.create_index("id", unique=True)
    await database.followups.create_index([("lead_id", 1), ("status", 1)])
    await database.followups.create_index([("assigned_to", 1), ("scheduled", 1)])
    await database.activities.create_index([("lead_id", 1), ("created_at", -1)])
    await database.outbound_channels.create_index("identifier", unique=True)
    await database.notifications.create_index([("user_id", 1), ("is_read", 1)])
    await database.settings.create_index("key", unique=True)
    await database.message_templates.create_index("id", unique=True)
    logger.info("✅ Index MongoDB créés")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
