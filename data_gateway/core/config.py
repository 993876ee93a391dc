# data_gateway/core/config.py
import os
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional, Union
from dotenv import load_dotenv

# Load .env file
load_dotenv()

class Settings(BaseSettings):
    APP_NAME: str = "SalesforceDataGateway"
    APP_VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "False").lower() == "true"

    # Salesforce Configuration
    SALESFORCE_CLIENT_ID: str
    SALESFORCE_CLIENT_SECRET: str
    SALESFORCE_USERNAME: str
    SALESFORCE_PASSWORD: str
    SALESFORCE_TOKEN_URL: AnyHttpUrl = "https://login.salesforce.com/services/oauth2/token"
    SALESFORCE_API_VERSION: str = "v58.0"
    SALESFORCE_TOKEN_REFRESH_BUFFER: int = 300

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILENAME: Optional[str] = os.getenv("LOG_FILENAME")
    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = []

    # Handler mappings: "file" reads HANDLER_MAPPINGS_FILE, "salesforce" queries HANDLER_MAPPING_OBJECT
    HANDLER_MAPPINGS_SOURCE: str = "file"
    HANDLER_MAPPINGS_FILE: Optional[str] = None
    HANDLER_MAPPING_OBJECT: str = "Data_Gateway_Handler__mdt"
    HANDLER_CACHE_TTL_SECONDS: int = 300
    HANDLER_VALIDATION_STRICT: bool = False

    # Record type schemas (relationship declarations)
    RECORD_SCHEMAS_FILE: Optional[str] = None
    RESOLVE_RELATIONSHIPS_FROM_DESCRIBE: bool = True

    # Batch limits
    GATEWAY_MAX_RECORDS: int = 2000
    SOBJECT_COLLECTION_LIMIT: int = 200  # Max records per sObject Collections request

    @field_validator("BACKEND_CORS_ORIGINS", mode='before')
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    @field_validator("HANDLER_MAPPINGS_SOURCE")
    def mappings_source_must_be_known(cls, v: str) -> str:
        source = v.lower()
        if source not in {"file", "salesforce"}:
            raise ValueError("HANDLER_MAPPINGS_SOURCE must be 'file' or 'salesforce'")
        return source

    @field_validator("SOBJECT_COLLECTION_LIMIT")
    def collection_limit_in_range(cls, v: int) -> int:
        if not 1 <= v <= 200:
            raise ValueError("SOBJECT_COLLECTION_LIMIT must be between 1 and 200")
        return v

    class Config:
        case_sensitive = True
        env_file = ".env"
        env_file_encoding = 'utf-8'

settings = Settings()
