from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional


class Settings(BaseSettings):
    # Database Configuration
    database_url: Optional[str] = None
    db_username: Optional[str] = None
    db_password: Optional[str] = None
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: Optional[str] = None

    # Firebase Cloud Messaging
    firebase_service_account_path: Optional[str] = None
    firebase_project_id: Optional[str] = None
    firebase_client_email: Optional[str] = None
    firebase_private_key: Optional[str] = None

    # Expo push service
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    expo_access_token: Optional[str] = None

    # Upper bound for a single transport call, in seconds
    push_timeout_seconds: float = 10.0

    # Order intake
    recent_fault_window_days: int = 7

    # Push tokens not refreshed within this many days are dropped
    push_token_max_age_days: int = 90

    default_minimum_stock: int = 5

    log_level: str = "INFO"

    @field_validator('push_timeout_seconds', mode='before')
    @classmethod
    def parse_push_timeout(cls, v):
        if v is None or v == '':
            return 10.0
        return float(v)

    @field_validator('log_level', mode='before')
    @classmethod
    def parse_log_level(cls, v):
        if v is None or v == '':
            return "INFO"
        return str(v).upper()

    @property
    def database_connection_url(self) -> str:
        """Build database URL from individual components or use direct URL"""
        if all([self.db_username, self.db_password, self.db_host, self.db_port, self.db_name]):
            return f"postgresql://{self.db_username}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
        elif self.database_url:
            return self.database_url
        else:
            return "sqlite:///./fieldops.db"  # Fallback to SQLite

    @property
    def firebase_configured(self) -> bool:
        if self.firebase_service_account_path:
            return True
        return all([self.firebase_project_id, self.firebase_client_email, self.firebase_private_key])

    class Config:
        env_file = ".env"


settings = Settings()
