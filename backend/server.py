"""
Expense Hub - Main Server

Expense approval API. Routes are organized in /routes/, approval logic in
/services/approval/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient

from routes import (
    expenses_router, workflows_router, roles_router, users_router,
    set_auth_store, set_expenses_service, set_workflows_service, set_roles_service,
    set_users_service,
)
from services.approval import (
    ApprovalService, MongoApprovalStore, MongoAuditRecorder, NullAuditRecorder,
    RoleRegistryResolver,
)
from services.approval_config import (
    AUDIT_ENABLED, DB_NAME, MONGO_URL, get_approval_settings,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def wire_service(service: ApprovalService) -> None:
    """Hand the approval service to every router."""
    set_auth_store(service.store)
    set_expenses_service(service)
    set_workflows_service(service)
    set_roles_service(service)
    set_users_service(service)


def build_mongo_service(db) -> ApprovalService:
    store = MongoApprovalStore(db)
    audit = MongoAuditRecorder(db.audit_logs) if AUDIT_ENABLED else NullAuditRecorder()
    return ApprovalService(store, audit, RoleRegistryResolver(store))


def create_app(service: Optional[ApprovalService] = None) -> FastAPI:
    """
    Build the API. With no service, the lifespan connects to MongoDB and
    wires a Mongo-backed service; tests pass an in-memory one instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mongo_client = None
        logger.info("Starting Expense Hub...")

        if service is None:
            mongo_client = AsyncIOMotorClient(MONGO_URL)
            db = mongo_client[DB_NAME]
            mongo_service = build_mongo_service(db)
            await mongo_service.store.create_indexes()
            wire_service(mongo_service)
        else:
            wire_service(service)

        logger.info("Expense Hub started (%s)", get_approval_settings())
        yield

        logger.info("Shutting down Expense Hub...")
        if mongo_client:
            mongo_client.close()

    app = FastAPI(
        title="Expense Hub",
        description="Expense submission and multi-stage approval workflows",
        version="1.0.0",
        lifespan=lifespan
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # API Router with /api prefix
    api_router = APIRouter(prefix="/api")
    api_router.include_router(expenses_router)
    api_router.include_router(workflows_router)
    api_router.include_router(roles_router)
    api_router.include_router(users_router)

    @api_router.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "expense-hub",
            "approval": get_approval_settings(),
        }

    app.include_router(api_router)

    @app.get("/")
    async def root():
        return {
            "service": "Expense Hub",
            "version": "1.0.0",
            "status": "running"
        }

    return app


app = create_app()
