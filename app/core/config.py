# =====================================================
# FILE: app/core/config.py
# Application Settings (environment / .env driven)
# =====================================================

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    PROJECT_NAME: str = "E-Signature Workflow Engine"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./esign.db"
    DB_ECHO: bool = False
    DB_POOL_PRE_PING: bool = True
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Blob storage: "local" or "s3"
    BLOB_BACKEND: str = "local"
    BLOB_LOCAL_PATH: str = "./storage/blobs"
    BLOB_BASE_URL: str = "local://blobs"

    # AWS S3 Configuration
    S3_BUCKET_NAME: str = "esign-documents"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_DEFAULT_REGION: str = "us-east-1"
    # MinIO / LocalStack
    S3_ENDPOINT_URL: Optional[str] = None

    # Certificates
    CERTIFICATE_ISSUER: str = "Legal Document Signing Platform"
    SIGNATURE_ALGORITHM: str = "RSA-SHA256"
    CERTIFICATE_VALIDITY_DAYS: int = 365

    # Invitations
    DEFAULT_INVITATION_DAYS: int = 14

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False


settings = Settings()
