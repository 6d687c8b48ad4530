"""API v1 router."""

from fastapi import APIRouter

from keyhive.api.v1.assignments import router as assignments_router
from keyhive.api.v1.disputes import router as disputes_router
from keyhive.api.v1.guest import router as guest_router
from keyhive.api.v1.hives import router as hives_router
from keyhive.api.v1.keys import router as keys_router

router = APIRouter()

# Include sub-routers
router.include_router(keys_router, prefix="/keys", tags=["keys"])
router.include_router(assignments_router, prefix="/assignments", tags=["assignments"])
router.include_router(disputes_router, prefix="/disputes", tags=["disputes"])
router.include_router(hives_router, tags=["hives"])  # /hives, /cells, /fobs prefixes are in the router itself
router.include_router(guest_router, tags=["guest"])
