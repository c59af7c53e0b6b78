"""Reward admin endpoints: rules, approvals, and event intake."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query

from ieco.dependencies import get_admin_id, get_services
from ieco.rewards.engine import InvitationEvent
from ieco.rewards.schemas import (
    ApproveRequest,
    EventOutcomeResponse,
    InvitationEventRequest,
    RejectRequest,
    RewardApprovalResponse,
    RewardInstructionResponse,
    RewardRuleCreate,
    RewardRuleResponse,
    RewardRuleUpdate,
)
from ieco.services import Services

router = APIRouter(prefix="/api/v1/rewards", tags=["Rewards"], dependencies=[Depends(get_admin_id)])


@router.get("/rules", response_model=list[RewardRuleResponse])
async def list_rules(
    active_only: bool = Query(False),
    event_type: str | None = Query(None),
    services: Services = Depends(get_services),  # noqa: B008
):
    rules = await services.rules.list_rules(active_only=active_only, event_type=event_type)
    return [RewardRuleResponse.model_validate(rule) for rule in rules]


@router.post("/rules", response_model=RewardRuleResponse, status_code=201)
async def create_rule(
    body: RewardRuleCreate,
    services: Services = Depends(get_services),  # noqa: B008
):
    """Create a rule. Malformed condition trees are rejected with 400."""
    rule = await services.rules.create_rule(**body.model_dump())
    return RewardRuleResponse.model_validate(rule)


@router.get("/rules/{rule_id}", response_model=RewardRuleResponse)
async def get_rule(
    rule_id: str,
    services: Services = Depends(get_services),  # noqa: B008
):
    rule = await services.rules.get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return RewardRuleResponse.model_validate(rule)


@router.patch("/rules/{rule_id}", response_model=RewardRuleResponse)
async def update_rule(
    rule_id: str,
    body: RewardRuleUpdate,
    services: Services = Depends(get_services),  # noqa: B008
):
    rule = await services.rules.update_rule(rule_id, body.model_dump(exclude_unset=True))
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return RewardRuleResponse.model_validate(rule)


@router.delete("/rules/{rule_id}", status_code=200)
async def delete_rule(
    rule_id: str,
    services: Services = Depends(get_services),  # noqa: B008
):
    """Deactivate a rule. Rules are never hard-deleted."""
    if not await services.rules.delete_rule(rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return {"detail": "Rule deactivated"}


@router.get("/approvals", response_model=list[RewardApprovalResponse])
async def list_pending_approvals(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),  # noqa: B008
):
    approvals = await services.rules.list_pending_approvals(limit=limit, offset=offset)
    return [RewardApprovalResponse.model_validate(a) for a in approvals]


@router.post("/approvals/{approval_id}/approve", response_model=RewardApprovalResponse)
async def approve(
    approval_id: str,
    body: ApproveRequest,
    admin_id: str = Depends(get_admin_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    if not await services.engine.approve(approval_id, admin_id, body.notes):
        raise HTTPException(status_code=409, detail="Approval not found or already decided")
    return RewardApprovalResponse.model_validate(await services.rules.get_approval(approval_id))


@router.post("/approvals/{approval_id}/reject", response_model=RewardApprovalResponse)
async def reject(
    approval_id: str,
    body: RejectRequest,
    admin_id: str = Depends(get_admin_id),
    services: Services = Depends(get_services),  # noqa: B008
):
    """Reject a pending approval. An empty reason is a 400."""
    if not await services.engine.reject(approval_id, admin_id, body.reason):
        raise HTTPException(status_code=409, detail="Approval not found or already decided")
    return RewardApprovalResponse.model_validate(await services.rules.get_approval(approval_id))


@router.post("/events", response_model=EventOutcomeResponse)
async def process_event(
    body: InvitationEventRequest,
    services: Services = Depends(get_services),  # noqa: B008
):
    """Run an invitation event through the reward pipeline synchronously."""
    outcome = await services.processor.process(InvitationEvent(**body.model_dump()))
    return EventOutcomeResponse(
        event_id=outcome.event_id,
        risk_score=outcome.risk.score,
        risk_reasons=outcome.risk.reasons,
        granted=[RewardInstructionResponse(**asdict(ins)) for ins in outcome.granted],
        pending_approval_ids=outcome.pending_approval_ids,
        notification_ids=outcome.notification_ids,
    )
