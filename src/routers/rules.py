"""Categorization rules API router."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from src.deps import DbSession
from src.schemas import (
    RuleCreate,
    RuleListResponse,
    RuleResponse,
    RuleSuggestionResponse,
    RuleSuggestRequest,
)
from src.services.classification import (
    RuleDefinitionError,
    create_rule,
    deactivate_rule,
    list_rules,
    suggest_rule,
)
from src.services.review import TransactionNotFoundError, get_transaction
from src.utils.exceptions import raise_bad_request, raise_not_found

router = APIRouter(prefix="/rules", tags=["rules"])

ClientId = Annotated[UUID, Query(description="Owning client (tenant) id")]


@router.get("", response_model=RuleListResponse)
async def list_categorization_rules(
    db: DbSession,
    client_id: ClientId,
    include_global: bool = True,
) -> RuleListResponse:
    rules = await list_rules(db, client_id, include_global=include_global)
    return RuleListResponse(
        items=[RuleResponse.model_validate(rule) for rule in rules],
        total=len(rules),
    )


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_categorization_rule(payload: RuleCreate, db: DbSession) -> RuleResponse:
    try:
        rule = await create_rule(
            db, payload.client_id, payload.model_dump(exclude={"client_id"}, exclude_none=True)
        )
    except RuleDefinitionError as exc:
        raise_bad_request(str(exc), cause=exc)
    await db.commit()
    await db.refresh(rule)
    return RuleResponse.model_validate(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_categorization_rule(rule_id: UUID, db: DbSession, client_id: ClientId) -> Response:
    """Deactivate a client rule. Applied counts and history are kept."""
    rule = await deactivate_rule(db, client_id, rule_id)
    if rule is None:
        raise_not_found("Rule")
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/suggest", response_model=RuleSuggestionResponse)
async def suggest_categorization_rule(
    payload: RuleSuggestRequest,
    db: DbSession,
) -> RuleSuggestionResponse:
    """Propose a rule from a transaction; optionally save it for the client."""
    try:
        txn = await get_transaction(db, payload.transaction_id, client_id=payload.client_id)
    except TransactionNotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    try:
        rule = suggest_rule(txn, payload.categoria)
    except RuleDefinitionError as exc:
        raise_bad_request(str(exc), cause=exc)

    persisted_id = None
    if payload.persist:
        model = await create_rule(
            db,
            payload.client_id,
            {
                "categoria": rule.categoria,
                "name": rule.name,
                "patrones": list(rule.patrones),
                "tipo": rule.tipo,
                "prioridad": rule.prioridad,
            },
        )
        await db.commit()
        persisted_id = model.id

    return RuleSuggestionResponse(
        categoria=rule.categoria,
        name=rule.name,
        patrones=list(rule.patrones),
        tipo=rule.tipo,
        prioridad=rule.prioridad,
        persisted_rule_id=persisted_id,
    )
