# data_gateway/core/schemas.py
import re
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional

# Salesforce API names: letters, digits and underscores, starting with a letter
API_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def is_valid_api_name(value: str) -> bool:
    return bool(value) and bool(API_NAME_PATTERN.match(value))


# --- Request Schemas ---

class GatewayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    external_id_field: str = Field(..., alias="externalIdField", description="API name of the field used to match existing records for upsert.")
    data: List[Dict[str, Any]] = Field(..., description="Parent records. Keys whose values are arrays of objects are child relationship collections.")

    @field_validator('external_id_field')
    def external_id_field_must_be_valid(cls, v):
        if not is_valid_api_name(v):
            raise ValueError('externalIdField must be a valid field API name')
        return v


# --- Response Schemas ---

class ResultStatus(str, Enum):
    SUCCESS = "Success"
    ERROR = "Error"


class ProcessingResult(BaseModel):
    index: int
    status: ResultStatus
    id: Optional[str] = None
    message: Optional[str] = None


class GatewayResponse(BaseModel):
    results: List[ProcessingResult]


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


class CacheInvalidationResponse(BaseModel):
    success: bool
    message: str


# --- Configuration Schemas ---

class HandlerPhase(str, Enum):
    BEFORE = "Before"
    AFTER = "After"


class HandlerMapping(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    sobject_api_name: str = Field(..., alias="sobjectApiName")
    handler_class_name: str = Field(..., alias="handlerClassName")
    handler_type: HandlerPhase = Field(..., alias="handlerType")

    @field_validator('sobject_api_name', 'handler_class_name')
    def must_not_be_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('must be a non-empty string')
        return v.strip()


class RelationshipSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    relationship_name: str = Field(..., alias="relationshipName")
    child_type: str = Field(..., alias="childType", description="API name of the child record type.")
    parent_field: str = Field(..., alias="parentField", description="Field on the child that references the parent.")


class SaveResult(BaseModel):
    """Outcome of one item of a partial-success store call, aligned with input order."""
    success: bool
    id: Optional[str] = None
    created: Optional[bool] = None
    errors: List[str] = Field(default_factory=list)

    @property
    def error_message(self) -> str:
        return "; ".join(self.errors) if self.errors else "Unknown error."
