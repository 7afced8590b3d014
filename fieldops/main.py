from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fieldops.api import crews, inventory, orders
from fieldops.config import settings


def create_app() -> FastAPI:
    app = FastAPI(title="Field Operations API", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000", "http://localhost:8081"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
    )

    app.include_router(orders.router, prefix="/api", tags=["Orders"])
    app.include_router(inventory.router, prefix="/api", tags=["Inventory"])
    app.include_router(crews.router, prefix="/api", tags=["Crews & Notifications"])

    @app.get("/")
    async def root():
        return {
            "message": "Field Operations API is running",
            "fcm_enabled": settings.firebase_configured
        }

    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "services": {
                "fcm": settings.firebase_configured,
                "expo": bool(settings.expo_push_url)
            }
        }

    return app
