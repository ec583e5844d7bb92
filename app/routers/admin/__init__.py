from fastapi import APIRouter

router = APIRouter(prefix="/api/admin")

from . import staff, timeclock, shifts, timeoff, reports

router.include_router(staff.router)
router.include_router(timeclock.router)
router.include_router(shifts.router)
router.include_router(timeoff.router)
router.include_router(reports.router)
