from .router import router as publishing_router

__all__ = ["publishing_router"]
