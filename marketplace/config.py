"""
Configuration management for the marketplace visual search service.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

class Config:
    """Application configuration class."""

    # Database Configuration
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", 5432))
    DB_NAME: str = os.getenv("DB_NAME", "marketplace")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "postgres")

    # Embedding Configuration
    HUGGINGFACE_TOKEN: str = os.getenv("HUGGINGFACE_TOKEN", "")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "google/vit-base-patch16-224")
    EMBEDDING_API_URL: str = os.getenv(
        "EMBEDDING_API_URL", "https://api-inference.huggingface.co/models"
    )
    EMBEDDING_TIMEOUT: float = float(os.getenv("EMBEDDING_TIMEOUT", 10.0))
    EMBEDDING_DIM: int = int(os.getenv("EMBEDDING_DIM", 512))

    # Upload Configuration
    UPLOAD_DIR: str = os.getenv("UPLOAD_DIR", "uploads")
    MAX_UPLOAD_SIZE: int = int(os.getenv("MAX_UPLOAD_SIZE", 5 * 1024 * 1024))  # 5MB

    # API Configuration
    DEFAULT_SEARCH_LIMIT: int = int(os.getenv("DEFAULT_SEARCH_LIMIT", 10))
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", 8000))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
