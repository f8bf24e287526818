import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from runstudio.core.config import settings
from runstudio.api.routes import router as api_router
from runstudio.services.session_manager import session_manager

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json")

# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.on_event("shutdown")
async def shutdown_event():
    session_manager.close_all()

@app.get("/")
def root():
    return {"message": f"{settings.PROJECT_NAME} API is running"}

@app.get("/health")
def health_check():
    return {"status": "ok"}
