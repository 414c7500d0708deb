from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import os

from backend import PHP_API_BASE_URL

# --- Imports for your routers ---
import routers.order_refresh as order_refresh
from routers.bills import router_bills
from routers.kitchen import router_kitchen
from routers.order_refresh import router_order_refresh
from routers.orders import router_orders

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager to start/stop the order refresh task
    """
    if order_refresh.ORDER_REFRESH_ENABLED:
        logger.info("🚀 Starting order refresh background task...")
        order_refresh.start_refresher()
    else:
        logger.info("ℹ️  Order refresh disabled by ORDER_REFRESH_ENABLED")

    yield  # Application runs here

    logger.info("🛑 Stopping order refresh background task...")
    await order_refresh.stop_refresher()


app = FastAPI(
    title="Restaurant POS Order Service API",
    description="Order, bill and payment lifecycle on top of the restaurant PHP backend.",
    version="1.0.0",
    lifespan=lifespan
)

# --- CORS middleware before the routers ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)

app.include_router(router_orders)
app.include_router(router_bills)
app.include_router(router_kitchen)
app.include_router(router_order_refresh)


# --- Health check endpoint ---
@app.get("/", tags=["Health Check"])
def read_root():
    return {
        "status": "ok",
        "message": "POS Order Service is running.",
        "order_refresh_enabled": order_refresh.is_running(),
        "service": "POS Order Service API",
        "version": "1.0.0"
    }


# --- Additional health check for monitoring ---
@app.get("/health", tags=["Health Check"])
def health_check():
    """
    Detailed health check endpoint for monitoring services
    """
    return {
        "status": "healthy",
        "service": "pos-order-service",
        "backend": PHP_API_BASE_URL,
        "order_refresh_task_running": order_refresh.is_running(),
        "endpoints_available": True
    }


# --- Uvicorn runner ---
if __name__ == "__main__":
    import uvicorn

    print("=" * 60)
    print("🚀 Starting POS Order Service")
    print("=" * 60)
    print("📍 Server: http://0.0.0.0:9000")
    print("📚 API Docs: http://127.0.0.1:9000/docs")
    print(f"🔗 PHP backend: {PHP_API_BASE_URL}")
    print(f"🔄 Order refresh: {'Enabled' if order_refresh.ORDER_REFRESH_ENABLED else 'Disabled'}")
    print("=" * 60)

    uvicorn.run(
        "main:app",
        port=9000,
        host="0.0.0.0",
        reload=True,
        log_level="info"
    )
