"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.settlements import router as settlements_router
from app.api.routes.points import router as points_router
from app.api.routes.budgets import router as budgets_router
from app.api.routes.due_items import router as due_items_router

router = APIRouter()

router.include_router(settlements_router, prefix="/settlements", tags=["settlements"])
router.include_router(points_router, prefix="/points", tags=["points"])
router.include_router(budgets_router, prefix="/budgets", tags=["budgets"])
router.include_router(due_items_router, prefix="/admin/due-items", tags=["admin"])
