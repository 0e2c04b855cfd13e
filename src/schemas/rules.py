"""Pydantic schemas for categorization rules."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from src.models import BankCode, Direction
from src.schemas.base import BaseResponse, ListResponse


class RuleCreate(BaseModel):
    client_id: UUID
    categoria: str = Field(..., min_length=1, max_length=32)
    name: str | None = Field(default=None, max_length=100)
    prioridad: int = Field(default=100, ge=0)
    palabras_clave: list[str] = Field(default_factory=list)
    patrones: list[str] = Field(default_factory=list)
    monto_min: int | None = Field(default=None, ge=0)
    monto_max: int | None = Field(default=None, ge=0)
    tipo: Direction | None = None
    banco: BankCode | None = None

    @model_validator(mode="after")
    def check_amount_range(self) -> "RuleCreate":
        if self.monto_min is not None and self.monto_max is not None and self.monto_min > self.monto_max:
            raise ValueError("monto_min must not exceed monto_max")
        return self


class RuleResponse(BaseResponse):
    id: UUID
    rule_set_id: UUID
    name: str
    categoria: str
    prioridad: int
    palabras_clave: list[str]
    patrones: list[str]
    monto_min: int | None
    monto_max: int | None
    tipo: Direction | None
    banco: BankCode | None
    activa: bool
    veces_aplicada: int
    created_at: datetime


RuleListResponse = ListResponse[RuleResponse]


class RuleSuggestRequest(BaseModel):
    client_id: UUID
    transaction_id: UUID
    categoria: str = Field(..., min_length=1, max_length=32)
    persist: bool = False


class RuleSuggestionResponse(BaseModel):
    categoria: str
    name: str
    patrones: list[str]
    tipo: Direction | None
    prioridad: int
    persisted_rule_id: UUID | None = None
