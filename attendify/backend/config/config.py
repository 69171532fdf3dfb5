import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """
    Settings read directly from environment variables.
    """
    # Database
    DATABASE_URL: str = os.environ.get("DATABASE_URL")

    # Redis: attempt counters and the rate limiter use separate databases
    APPLICATION_REDIS_URL: str = os.environ.get("APPLICATION_REDIS_URL")
    RATE_LIMITER_REDIS_URL: str = os.environ.get("RATE_LIMITER_REDIS_URL", "memory://")

    # JWT (tokens are issued by the external auth provider)
    SECRET_KEY: str = os.environ.get("SECRET_KEY")
    ALGORITHM: str = os.environ.get("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60))

    # External services
    DESCRIPTOR_EXTRACTOR_URL: str = os.environ.get("DESCRIPTOR_EXTRACTOR_URL", "http://localhost:8500")
    NOTIFICATION_SERVICE_URL: str = os.environ.get("NOTIFICATION_SERVICE_URL", "http://localhost:8600")
    NOTIFICATION_TIMEOUT_SECONDS: float = float(os.environ.get("NOTIFICATION_TIMEOUT_SECONDS", 10))

    # Verification pipeline
    EXTRACTION_TIMEOUT_SECONDS: float = float(os.environ.get("EXTRACTION_TIMEOUT_SECONDS", 10))
    MATCH_TIMEOUT_SECONDS: float = float(os.environ.get("MATCH_TIMEOUT_SECONDS", 2))
    MIN_FACE_QUALITY: float = float(os.environ.get("MIN_FACE_QUALITY", 0.5))
    MIN_ENROLLMENT_QUALITY: float = float(os.environ.get("MIN_ENROLLMENT_QUALITY", 0.75))
    DESCRIPTOR_LENGTH: int = int(os.environ.get("DESCRIPTOR_LENGTH", 128))
    MAX_IMAGE_BYTES: int = int(os.environ.get("MAX_IMAGE_BYTES", 5 * 1024 * 1024))
    ATTEMPT_COUNTER_TTL_SECONDS: int = int(os.environ.get("ATTEMPT_COUNTER_TTL_SECONDS", 86400))

    # Defaults for new sessions
    DEFAULT_CONFIDENCE_THRESHOLD: float = float(os.environ.get("DEFAULT_CONFIDENCE_THRESHOLD", 0.93))
    DEFAULT_LIVENESS_THRESHOLD: float = float(os.environ.get("DEFAULT_LIVENESS_THRESHOLD", 0.80))
    DEFAULT_MAX_ATTEMPTS: int = int(os.environ.get("DEFAULT_MAX_ATTEMPTS", 3))

    # Notification retries
    NOTIFICATION_MAX_RETRIES: int = int(os.environ.get("NOTIFICATION_MAX_RETRIES", 5))
    NOTIFICATION_RETRY_INTERVAL_MINUTES: int = int(os.environ.get("NOTIFICATION_RETRY_INTERVAL_MINUTES", 5))

    # Logs directory, mounted as a volume in Docker
    LOG_DIR: str = os.environ.get("LOG_DIR", "logs")

# Single importable settings instance
settings = Config()
