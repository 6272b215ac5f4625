from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import attachments, crawl, search, system

api_router = APIRouter()
api_router.include_router(system.router)
api_router.include_router(crawl.router)
api_router.include_router(search.router)
api_router.include_router(attachments.router)

__all__ = ["api_router"]
