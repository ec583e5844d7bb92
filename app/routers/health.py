from fastapi import APIRouter

from app.utils.broadcaster import broadcaster

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "message": "Club Ops API is running",
        "websocket_clients": broadcaster.client_count,
    }
