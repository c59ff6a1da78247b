from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import access, enforcement, plans, subscription_requests, subscriptions
from services.subscription_errors import SubscriptionError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting EduFleet Exchange Subscription API")
    await database.connect()

    if os.environ.get("SEED_PLANS_ON_STARTUP", "true").strip().lower() == "true":
        from services.plan_catalog import plan_catalog
        result = await plan_catalog.seed_default_plans()
        logger.info("Plan catalogue: %s created, %s already present", result["created"], result["skipped"])

    yield

    # Shutdown
    logger.info("Shutting down EduFleet Exchange Subscription API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="EduFleet Exchange Subscription API",
    description="Subscription plans, entitlements and usage metering for the EduFleet Exchange marketplace",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers (fixed prefixes before the /{user_id}/... routes)
app.include_router(plans.router)
app.include_router(subscription_requests.router)
app.include_router(enforcement.router)
app.include_router(subscriptions.router)
app.include_router(access.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "EduFleet Exchange Subscriptions",
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

# Domain errors: stable error_code plus the status the error class declares
@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# Auth guards and entitlement denials raise HTTPException; keep the same envelope
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "UNAUTHORIZED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    if isinstance(exc.detail, dict):
        content = {"success": False, "error_code": codes.get(exc.status_code, "HTTP_ERROR"), **exc.detail}
        content.setdefault("error", exc.detail.get("reason") or "Request denied")
    else:
        content = {"success": False, "error": exc.detail, "error_code": codes.get(exc.status_code, "HTTP_ERROR")}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

# Validation error handler: log request_id + full errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "Invalid request",
            "error_code": "VALIDATION_ERROR",
            "detail": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
            "request_id": request_id,
        },
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "error_code": "INTERNAL_ERROR"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
