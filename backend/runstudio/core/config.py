import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Model Run Studio"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Cors
    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Run backend + credit service
    API_URL: str = os.getenv("RUNSTUDIO_API_URL", "http://localhost:3001/api")
    CREDITS_API_URL: str = os.getenv("RUNSTUDIO_CREDITS_API_URL", "http://localhost:4000")
    API_KEY: str | None = os.getenv("RUNSTUDIO_API_KEY")
    HTTP_TIMEOUT: float = float(os.getenv("RUNSTUDIO_HTTP_TIMEOUT", "30"))

    # Polling: 60 attempts at 2s is roughly two minutes
    POLL_INTERVAL: float = float(os.getenv("RUNSTUDIO_POLL_INTERVAL", "2.0"))
    POLL_MAX_ATTEMPTS: int = int(os.getenv("RUNSTUDIO_POLL_MAX_ATTEMPTS", "60"))
    RECENT_LIMIT: int = int(os.getenv("RUNSTUDIO_RECENT_LIMIT", "10"))

    # Credits
    LOW_CREDITS_THRESHOLD: int = int(os.getenv("RUNSTUDIO_LOW_CREDITS_THRESHOLD", "10"))
    DEFAULT_CREDIT_COST: int = 2

    # Image fields
    IMAGE_MAX_DIMENSION: int = int(os.getenv("RUNSTUDIO_IMAGE_MAX_DIMENSION", "2048"))
    IMAGE_JPEG_QUALITY: int = int(os.getenv("RUNSTUDIO_IMAGE_JPEG_QUALITY", "80"))

settings = Settings()
