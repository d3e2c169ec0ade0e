from fastapi import APIRouter

from backend.app.api.v1.endpoints.health import router as health_router
from backend.app.api.v1.endpoints.users import router as users_router
from backend.app.api.v1.endpoints.products import router as products_router
from backend.app.api.v1.endpoints.product_groups import router as product_groups_router
from backend.app.api.v1.endpoints.suppliers import router as suppliers_router
from backend.app.api.v1.endpoints.collaborators import router as collaborators_router
from backend.app.api.v1.endpoints.locations import router as locations_router
from backend.app.api.v1.endpoints.stock import router as stock_router
from backend.app.api.v1.endpoints.stock_movements import router as stock_movements_router
from backend.app.api.v1.endpoints.loans import router as loans_router
from backend.app.api.v1.endpoints.transfers import router as transfers_router
from backend.app.api.v1.endpoints.reports import router as reports_router
from backend.app.api.v1.endpoints.audit import router as audit_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(users_router, tags=["users"])
router.include_router(products_router, tags=["products"])
router.include_router(product_groups_router, tags=["product_groups"])
router.include_router(suppliers_router, tags=["suppliers"])
router.include_router(collaborators_router, tags=["collaborators"])
router.include_router(locations_router, tags=["locations"])
router.include_router(stock_router, tags=["stock"])
router.include_router(stock_movements_router, tags=["stock_movements"])
router.include_router(loans_router, tags=["loans"])
router.include_router(transfers_router, tags=["transfers"])
router.include_router(reports_router, tags=["reports"])
router.include_router(audit_router, tags=["audit"])
