"""
Application configuration management.

Loads settings from environment variables with sensible defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file from package directory
_PACKAGE_DIR = Path(__file__).parent
_PROJECT_ROOT = _PACKAGE_DIR.parent

# Try loading .env from multiple locations
for env_path in [_PACKAGE_DIR / ".env", _PROJECT_ROOT / ".env"]:
    if env_path.exists():
        load_dotenv(env_path)
        break


class Config:
    """Application configuration loaded from environment variables."""
    
    # ========================================
    # Paths
    # ========================================
    BASE_DIR: Path = _PACKAGE_DIR
    PROJECT_ROOT: Path = _PROJECT_ROOT
    
    # Database
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL", 
        f"sqlite:///{_PROJECT_ROOT / 'synergy.db'}"
    )
    
    # Business card images
    CARD_STORAGE_DIR: Path = Path(
        os.getenv("CARD_STORAGE_DIR", str(_PROJECT_ROOT / "business_cards"))
    )
    MAX_CARD_IMAGE_BYTES: int = int(os.getenv("MAX_CARD_IMAGE_BYTES", str(5 * 1024 * 1024)))
    
    # ========================================
    # Authentication
    # ========================================
    SECRET_KEY: str = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
    
    # Shared key for the external scheduler hitting the dispatch endpoint
    DISPATCH_API_KEY: str | None = os.getenv("DISPATCH_API_KEY")
    
    # ========================================
    # OpenAI Configuration
    # ========================================
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_VISION_MODEL: str = os.getenv("OPENAI_VISION_MODEL", "gpt-4o")
    OPENAI_MAX_TOKENS: int = int(os.getenv("OPENAI_MAX_TOKENS", "1000"))
    
    # ========================================
    # Email Providers
    # ========================================
    MAIL_TRANSPORT: str = os.getenv("MAIL_TRANSPORT", "smtp").lower()
    
    # SMTP
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: str = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_USE_TLS: bool = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    SMTP_FROM: str = os.getenv("SMTP_FROM", "")
    
    # Gmail OAuth (alternative to SMTP)
    GMAIL_CREDENTIALS_FILE: Path = Path(
        os.getenv("CREDENTIALS_FILE", str(_PACKAGE_DIR / "credentials.json"))
    )
    GMAIL_TOKEN_FILE: Path = Path(
        os.getenv("TOKEN_FILE", str(_PACKAGE_DIR / "token.json"))
    )
    
    # ========================================
    # Dispatch
    # ========================================
    DISPATCH_BATCH_LIMIT: int = int(os.getenv("DISPATCH_BATCH_LIMIT", "100"))
    
    # ========================================
    # Server Configuration
    # ========================================
    FLASK_DEBUG: bool = os.getenv("FLASK_DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "127.0.0.1")
    API_PORT: int = int(os.getenv("API_PORT", "5000"))
    
    # CORS
    ALLOWED_ORIGINS: list[str] = os.getenv(
        "ALLOWED_ORIGINS", 
        "http://localhost:8080,http://127.0.0.1:8080"
    ).split(",")
    
    @classmethod
    def is_production(cls) -> bool:
        """Check if running in production mode."""
        return not cls.FLASK_DEBUG and cls.SECRET_KEY != "dev-secret-key-change-in-production"
    
    @classmethod
    def validate(cls) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []
        
        if not cls.OPENAI_API_KEY:
            errors.append("OPENAI_API_KEY is not set")
        
        if cls.MAIL_TRANSPORT not in ("smtp", "gmail"):
            errors.append(f"MAIL_TRANSPORT must be 'smtp' or 'gmail', got '{cls.MAIL_TRANSPORT}'")
        elif cls.MAIL_TRANSPORT == "smtp":
            if not (cls.SMTP_HOST and cls.SMTP_USER and cls.SMTP_PASSWORD and cls.SMTP_FROM):
                errors.append("SMTP_HOST, SMTP_USER, SMTP_PASSWORD and SMTP_FROM must all be set")
        
        if cls.is_production():
            if not cls.DISPATCH_API_KEY:
                errors.append("DISPATCH_API_KEY must be set for production")
        
        return errors


# Create singleton instance
config = Config()
