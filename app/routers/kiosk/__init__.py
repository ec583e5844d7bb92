from fastapi import APIRouter

router = APIRouter(prefix="/api/kiosk")

from . import checkout

router.include_router(checkout.router)
