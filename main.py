import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from config import settings
from database import AsyncSessionLocal, init_db
from api.accounts import router as accounts_router
from api.admin import router as admin_router
from api.loans import router as loans_router
from api.notifications import router as notifications_router
from api.products import router as products_router
from services.catalog import ensure_default_products
from services.errors import LoanError

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    async with AsyncSessionLocal() as session:
        added = await ensure_default_products(session)
        await session.commit()
    if added:
        logger.info("Seeded %d default loan products", added)
    yield


app = FastAPI(
    title=settings.app_name,
    description="Loan application, security deposit, back-office review and repayment API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(loans_router)
app.include_router(admin_router)
app.include_router(products_router)
app.include_router(notifications_router)
app.include_router(accounts_router)


@app.exception_handler(LoanError)
async def loan_error_handler(request: Request, exc: LoanError):
    logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(OperationalError)
@app.exception_handler(asyncio.TimeoutError)
async def storage_unavailable_handler(request: Request, exc: Exception):
    logger.error("%s %s failed: storage unavailable (%s)", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "retryable": True,
            "error": {
                "code": "StorageUnavailable",
                "category": "transient",
                "message": "The service is temporarily unavailable. Please try again in a moment.",
                "retryable": True,
            },
        },
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
