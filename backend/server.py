"""
Lead Backoffice - API Backend
Ingestion de leads affiliés, imports Shopify, payouts et postbacks

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

import os
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from config import client
from routes import leads, webhooks, postbacks, payouts, wallet
from routes.deps import get_store, get_diagnostics
from services.lead_ingestion import IngestError
from services.wallet import WalletError

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("lead_backoffice")

# Créer l'app
app = FastAPI(
    title="Lead Backoffice",
    description="Back-office d'ingestion de leads affiliés",
    version="1.0.0"
)

# ==================== ROUTES ====================

app.include_router(leads.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")
app.include_router(postbacks.router, prefix="/api")
app.include_router(payouts.router, prefix="/api")
app.include_router(wallet.router, prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


# ==================== ERREURS ====================

def _error_body(code: str, message: str, details=None) -> dict:
    body = {"success": False, "error": code, "message": message}
    if details is not None:
        body["details"] = details
    return body


@app.exception_handler(IngestError)
@app.exception_handler(WalletError)
async def service_error_handler(request: Request, exc):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message, exc.details))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
        details.append({"field": field, "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", "Invalid request", details))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc!r}", exc_info=exc)
    return JSONResponse(status_code=500, content=_error_body("INTERNAL_ERROR", "An unexpected error occurred"))


# ==================== ROUTE RACINE ====================

@app.get("/")
async def root():
    return {
        "name": "Lead Backoffice API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


# ==================== STARTUP ====================

@app.on_event("startup")
async def startup():
    logger.info("🚀 Lead Backoffice démarré")
    await get_store().ensure_indexes()
    logger.info("✅ Index MongoDB créés")


@app.on_event("shutdown")
async def shutdown_db_client():
    get_diagnostics().close()
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
