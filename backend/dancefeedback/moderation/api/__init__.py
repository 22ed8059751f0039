"""Moderation API routers."""

from fastapi import APIRouter

from dancefeedback.moderation.api.admin import router as admin_router

router = APIRouter()
router.include_router(admin_router)

__all__ = ["router"]
