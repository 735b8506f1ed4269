from fastapi import APIRouter

health_router = APIRouter(prefix="/api", tags=["health"])


@health_router.get("/health")
async def health():
    return {"status": "OK", "message": "AlumniHive API is running"}
