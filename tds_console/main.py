"""
Trusted Data Space Console: FastAPI application entry point.

This module initializes the FastAPI application that runs the contract
negotiation engine of the connector console. It configures logging and
CORS, loads the constraint catalog, selects the storage backend and
registers the catalog, policy and contract routes.

Errors raised by the services are `NegotiationError` subclasses; a single
exception handler turns them into JSON error bodies.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tds_console.core import config
from tds_console.core.errors import NegotiationError
from tds_console.db.client import close_mongo, init_mongo
from tds_console.db.stores import InMemoryContractStore, InMemoryPolicyStore, MongoContractStore, MongoPolicyStore
from tds_console.routes import catalog_routes, contracts_routes, policies_routes
from tds_console.services.catalog_service import init_catalog
from tds_console.services.contracts_service import init_contract_service
from tds_console.services.injection import check_bindings
from tds_console.services.policies_service import init_policy_registry

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# Application initialization
# ------------------------------------------------------------------------------

app = FastAPI(
    title="Trusted Data Space Console",
    description="Policy-governed contract negotiation between data space participants",
    version="0.1.0"
)

# ------------------------------------------------------------------------------
# Middleware configuration
# ------------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------------------------------------------------------------------
# Error handling
# ------------------------------------------------------------------------------

@app.exception_handler(NegotiationError)
async def negotiation_error_handler(request: Request, exc: NegotiationError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# ------------------------------------------------------------------------------
# Application startup events
# ------------------------------------------------------------------------------

@app.on_event("startup")
async def startup():
    """
    Load the catalog and wire the services to the configured storage.

    A broken catalog raises `CatalogConfigurationError` and stops startup.
    """

    catalog = init_catalog(config.CATALOG_PATH)
    check_bindings(catalog)

    if config.STORAGE_BACKEND == "mongo":
        db = await init_mongo()
        contract_store, policy_store = MongoContractStore(db), MongoPolicyStore(db)
    else:
        contract_store, policy_store = InMemoryContractStore(), InMemoryPolicyStore()
    logger.info("Storage backend: %s", config.STORAGE_BACKEND)

    init_contract_service(contract_store, catalog)
    init_policy_registry(policy_store, catalog)


@app.on_event("shutdown")
async def shutdown():
    close_mongo()

# ------------------------------------------------------------------------------
# API routes registration
# ------------------------------------------------------------------------------

app.include_router(catalog_routes.router, prefix="/catalog", tags=["Catalog"])
app.include_router(policies_routes.router, prefix="/policies", tags=["Policies"])
app.include_router(contracts_routes.router, prefix="/contracts", tags=["Contracts"])
