"""
Microlend API Application Factory
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .loans import router as loans_router
from .payments import router as payments_router
from .schedules import router as schedules_router
from .scores import router as scores_router
from .dependencies import LendingSystem, get_lending_system


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Microlend API",
        description="Installment reconciliation and credit scoring for micro-lending",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(schedules_router, prefix="/schedules", tags=["Schedules"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(scores_router, prefix="/scores", tags=["Credit Scores"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microlend_api",
            "version": __version__
        }

    return app


app = create_app()

__all__ = ["create_app", "app", "LendingSystem", "get_lending_system"]
