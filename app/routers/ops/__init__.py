from fastapi import APIRouter

router = APIRouter(prefix="/api")

from . import (
    customers, inventory, cleaning, lanes, visits,
    checkout, waitlist, upgrades, billing, timeclock
)

router.include_router(customers.router)
router.include_router(inventory.router)
router.include_router(cleaning.router)
router.include_router(lanes.router)
router.include_router(visits.router)
router.include_router(checkout.router)
router.include_router(waitlist.router)
router.include_router(upgrades.router)
router.include_router(billing.router)
router.include_router(billing.payments_router)
router.include_router(timeclock.router)
