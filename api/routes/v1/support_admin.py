"""
api/routes/v1/support_admin.py -- Support configuration screens (SUPPORT_MANAGER).

Routes (all under /api/v1):
  GET    /admin/sla-rules                                  VIEW_LIST  (severity, priorityLevel, active)
  GET    /admin/sla-rules/{ruleId}                         VIEW_DETAIL
  POST   /admin/sla-rules                                  CREATE
  PUT    /admin/sla-rules/{ruleId}                         EDIT
  PATCH  /admin/sla-rules/{ruleId}/toggle                  EDIT
  DELETE /admin/sla-rules/{ruleId}                         DELETE (409 while tickets use it)
  GET    /admin/ticket-subject-templates                   VIEW_LIST  (active)
  GET    /admin/ticket-subject-templates/{code}            VIEW_DETAIL
  POST   /admin/ticket-subject-templates                   CREATE
  PUT    /admin/ticket-subject-templates/{code}            EDIT
  PATCH  /admin/ticket-subject-templates/{code}/toggle     EDIT
  DELETE /admin/ticket-subject-templates/{code}            DELETE
  GET    /admin/support-plans                              VIEW_LIST  (active)
  GET    /admin/support-plans/{planId}                     VIEW_DETAIL
  POST   /admin/support-plans                              CREATE
  PUT    /admin/support-plans/{planId}                     EDIT
  PATCH  /admin/support-plans/{planId}/toggle              EDIT
  DELETE /admin/support-plans/{planId}                     DELETE (409 once subscribed)

Rules enforced here:
  - SLA rule: one rule per (severity, priority level); resolution budget not
    shorter than the first-response budget.
  - Template: code and title unique (title case-insensitive).
  - Support plan: one plan per (level, price); one active plan per level
    (switching one on switches the others at that level off); among active
    plans a higher level always costs more.

Tickets keep the SLA rule id and due times they were opened with, so editing
a rule only affects tickets opened afterwards.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import (
    SlaRuleResponse,
    SlaRuleWrite,
    SubjectTemplateAdminResponse,
    SubjectTemplateCreate,
    SubjectTemplateUpdate,
    SupportPlanAdminResponse,
    SupportPlanWrite,
)
from auth.constants import ModuleCodes, PermissionCodes
from auth.dependencies import require_permission
from auth.models import User
from shop.models import SupportPlan
from shop.store import ShopStore
from support.models import SEVERITIES, SlaRule, TicketSubjectTemplate
from support.sla import normalize_severity
from support.store import SupportStore

router = APIRouter()

_M = ModuleCodes.SUPPORT_MANAGER


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found."})


def _checked_severity(raw: str) -> str:
    severity = normalize_severity(raw, default="")
    if not severity:
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_severity", "message": f"Severity must be one of {', '.join(SEVERITIES)}."},
        )
    return severity


# ---------------------------------------------------------------------------
# SLA rules
# ---------------------------------------------------------------------------


def _load_rule(store: SupportStore, rule_id: int) -> SlaRule:
    rule = store.get_sla_rule(rule_id)
    if rule is None:
        raise _not_found("SLA rule")
    return rule


def _validated_rule(store: SupportStore, body: SlaRuleWrite, rule_id: Optional[int] = None) -> SlaRule:
    severity = _checked_severity(body.severity)
    if body.resolution_minutes < body.first_response_minutes:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "invalid_sla",
                "message": "Resolution minutes must be greater than or equal to first response minutes.",
            },
        )
    if store.sla_rule_taken(severity, body.priority_level, exclude_id=rule_id):
        raise HTTPException(
            status_code=409,
            detail={
                "code": "duplicate_sla_rule",
                "message": "Another SLA rule already covers this severity and priority level.",
            },
        )
    return SlaRule(
        id=rule_id,
        name=body.name,
        severity=severity,
        priority_level=body.priority_level,
        first_response_minutes=body.first_response_minutes,
        resolution_minutes=body.resolution_minutes,
        is_active=body.is_active,
    )


@router.get("/admin/sla-rules", response_model=list[SlaRuleResponse])
def list_sla_rules(
    request: Request,
    severity: Optional[str] = Query(default=None, max_length=20),
    priority_level: Optional[int] = Query(default=None, alias="priorityLevel", ge=0),
    active: Optional[bool] = Query(default=None),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[SlaRuleResponse]:
    store: SupportStore = request.app.state.support
    rules = store.list_sla_rules(
        severity=_checked_severity(severity) if severity else None,
        priority_level=priority_level,
        active=active,
    )
    return [SlaRuleResponse.from_rule(r) for r in rules]


@router.get("/admin/sla-rules/{rule_id}", response_model=SlaRuleResponse)
def get_sla_rule(
    request: Request,
    rule_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> SlaRuleResponse:
    return SlaRuleResponse.from_rule(_load_rule(request.app.state.support, rule_id))


@router.post("/admin/sla-rules", response_model=SlaRuleResponse, status_code=201)
def create_sla_rule(
    request: Request,
    body: SlaRuleWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> SlaRuleResponse:
    store: SupportStore = request.app.state.support
    rule_id = store.create_sla_rule(_validated_rule(store, body))
    return SlaRuleResponse.from_rule(store.get_sla_rule(rule_id))


@router.put("/admin/sla-rules/{rule_id}", response_model=SlaRuleResponse)
def update_sla_rule(
    request: Request,
    rule_id: int,
    body: SlaRuleWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> SlaRuleResponse:
    store: SupportStore = request.app.state.support
    _load_rule(store, rule_id)
    store.update_sla_rule(_validated_rule(store, body, rule_id))
    store.set_sla_rule_active(rule_id, body.is_active)
    return SlaRuleResponse.from_rule(store.get_sla_rule(rule_id))


@router.patch("/admin/sla-rules/{rule_id}/toggle", response_model=SlaRuleResponse)
def toggle_sla_rule(
    request: Request,
    rule_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> SlaRuleResponse:
    store: SupportStore = request.app.state.support
    rule = _load_rule(store, rule_id)
    store.set_sla_rule_active(rule_id, not rule.is_active)
    return SlaRuleResponse.from_rule(store.get_sla_rule(rule_id))


@router.delete("/admin/sla-rules/{rule_id}", status_code=204)
def delete_sla_rule(
    request: Request,
    rule_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    store: SupportStore = request.app.state.support
    _load_rule(store, rule_id)
    in_use = store.count_tickets_with_rule(rule_id)
    if in_use:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "sla_rule_in_use",
                "message": f"SLA rule is applied to {in_use} ticket(s). Switch it off instead of deleting it.",
            },
        )
    store.delete_sla_rule(rule_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Ticket subject templates
# ---------------------------------------------------------------------------


def _load_template(store: SupportStore, template_code: str) -> TicketSubjectTemplate:
    template = store.get_template(template_code, active_only=False)
    if template is None:
        raise _not_found("Template")
    return template


def _check_title(store: SupportStore, title: str, exclude_code: Optional[str] = None) -> None:
    if store.template_title_taken(title, exclude_code=exclude_code):
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_title", "message": "Another template already has this title."},
        )


@router.get("/admin/ticket-subject-templates", response_model=list[SubjectTemplateAdminResponse])
def list_subject_templates(
    request: Request,
    active: Optional[bool] = Query(default=None),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[SubjectTemplateAdminResponse]:
    templates = request.app.state.support.list_templates(active_only=False)
    if active is not None:
        templates = [t for t in templates if t.is_active == active]
    return [SubjectTemplateAdminResponse.from_template(t) for t in templates]


@router.get("/admin/ticket-subject-templates/{template_code}", response_model=SubjectTemplateAdminResponse)
def get_subject_template(
    request: Request,
    template_code: str,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> SubjectTemplateAdminResponse:
    return SubjectTemplateAdminResponse.from_template(_load_template(request.app.state.support, template_code))


@router.post("/admin/ticket-subject-templates", response_model=SubjectTemplateAdminResponse, status_code=201)
def create_subject_template(
    request: Request,
    body: SubjectTemplateCreate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> SubjectTemplateAdminResponse:
    store: SupportStore = request.app.state.support
    if store.get_template(body.template_code, active_only=False) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "duplicate_code", "message": "A template with this code already exists."},
        )
    _check_title(store, body.title)
    template = TicketSubjectTemplate(
        template_code=body.template_code,
        title=body.title,
        severity=_checked_severity(body.severity),
        category=body.category or None,
        is_active=body.is_active,
    )
    store.upsert_template(template)
    return SubjectTemplateAdminResponse.from_template(template)


@router.put("/admin/ticket-subject-templates/{template_code}", response_model=SubjectTemplateAdminResponse)
def update_subject_template(
    request: Request,
    template_code: str,
    body: SubjectTemplateUpdate,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> SubjectTemplateAdminResponse:
    store: SupportStore = request.app.state.support
    _load_template(store, template_code)
    _check_title(store, body.title, exclude_code=template_code)
    template = TicketSubjectTemplate(
        template_code=template_code,
        title=body.title,
        severity=_checked_severity(body.severity),
        category=body.category or None,
        is_active=body.is_active,
    )
    store.upsert_template(template)
    return SubjectTemplateAdminResponse.from_template(template)


@router.patch("/admin/ticket-subject-templates/{template_code}/toggle", response_model=SubjectTemplateAdminResponse)
def toggle_subject_template(
    request: Request,
    template_code: str,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> SubjectTemplateAdminResponse:
    store: SupportStore = request.app.state.support
    template = _load_template(store, template_code)
    template.is_active = not template.is_active
    store.upsert_template(template)
    return SubjectTemplateAdminResponse.from_template(template)


@router.delete("/admin/ticket-subject-templates/{template_code}", status_code=204)
def delete_subject_template(
    request: Request,
    template_code: str,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    if not request.app.state.support.delete_template(template_code):
        raise _not_found("Template")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Support plans
# ---------------------------------------------------------------------------


def _load_plan(store: ShopStore, plan_id: int) -> SupportPlan:
    plan = store.get_support_plan(plan_id)
    if plan is None:
        raise _not_found("Support plan")
    return plan


def _check_plan(store: ShopStore, body: SupportPlanWrite, plan_id: Optional[int] = None) -> None:
    if store.support_plan_taken(body.priority_level, body.price, exclude_id=plan_id):
        raise HTTPException(
            status_code=409,
            detail={
                "code": "duplicate_plan",
                "message": "Another support plan has the same priority level and price. Choose another price.",
            },
        )
    if body.is_active:
        _check_price_order(store, body.priority_level, body.price, plan_id)


def _check_price_order(store: ShopStore, priority_level: int, price: int, plan_id: Optional[int]) -> None:
    other = store.price_order_conflict(priority_level, price, exclude_id=plan_id)
    if other is None:
        return
    rule = "higher levels must cost more" if other.priority_level < priority_level else "lower levels must cost less"
    raise HTTPException(
        status_code=400,
        detail={
            "code": "invalid_price_order",
            "message": (
                f"Cannot activate a level {priority_level} plan at {price}: the active level "
                f"{other.priority_level} plan costs {other.price}, and {rule}."
            ),
        },
    )


@router.get("/admin/support-plans", response_model=list[SupportPlanAdminResponse])
def list_support_plans(
    request: Request,
    active: Optional[bool] = Query(default=None),
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_LIST)),
) -> list[SupportPlanAdminResponse]:
    plans = request.app.state.shop.list_support_plans(active_only=False)
    if active is not None:
        plans = [p for p in plans if p.is_active == active]
    return [SupportPlanAdminResponse.from_plan(p) for p in plans]


@router.get("/admin/support-plans/{plan_id}", response_model=SupportPlanAdminResponse)
def get_support_plan(
    request: Request,
    plan_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.VIEW_DETAIL)),
) -> SupportPlanAdminResponse:
    return SupportPlanAdminResponse.from_plan(_load_plan(request.app.state.shop, plan_id))


@router.post("/admin/support-plans", response_model=SupportPlanAdminResponse, status_code=201)
def create_support_plan(
    request: Request,
    body: SupportPlanWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.CREATE)),
) -> SupportPlanAdminResponse:
    store: ShopStore = request.app.state.shop
    _check_plan(store, body)
    plan_id = store.create_support_plan(
        SupportPlan(
            name=body.name,
            description=body.description or None,
            priority_level=body.priority_level,
            price=body.price,
            is_active=False,
        )
    )
    if body.is_active:
        store.set_support_plan_active(plan_id, True)
    return SupportPlanAdminResponse.from_plan(store.get_support_plan(plan_id))


@router.put("/admin/support-plans/{plan_id}", response_model=SupportPlanAdminResponse)
def update_support_plan(
    request: Request,
    plan_id: int,
    body: SupportPlanWrite,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> SupportPlanAdminResponse:
    store: ShopStore = request.app.state.shop
    _load_plan(store, plan_id)
    _check_plan(store, body, plan_id)
    store.update_support_plan(
        plan_id,
        name=body.name,
        description=body.description or None,
        priority_level=body.priority_level,
        price=body.price,
    )
    store.set_support_plan_active(plan_id, body.is_active)
    return SupportPlanAdminResponse.from_plan(store.get_support_plan(plan_id))


@router.patch("/admin/support-plans/{plan_id}/toggle", response_model=SupportPlanAdminResponse)
def toggle_support_plan(
    request: Request,
    plan_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.EDIT)),
) -> SupportPlanAdminResponse:
    store: ShopStore = request.app.state.shop
    plan = _load_plan(store, plan_id)
    if not plan.is_active:
        _check_price_order(store, plan.priority_level, plan.price, plan_id)
    store.set_support_plan_active(plan_id, not plan.is_active)
    return SupportPlanAdminResponse.from_plan(store.get_support_plan(plan_id))


@router.delete("/admin/support-plans/{plan_id}", status_code=204)
def delete_support_plan(
    request: Request,
    plan_id: int,
    current_user: User = Depends(require_permission(_M, PermissionCodes.DELETE)),
) -> Response:
    store: ShopStore = request.app.state.shop
    _load_plan(store, plan_id)
    if store.count_subscriptions(plan_id):
        raise HTTPException(
            status_code=409,
            detail={
                "code": "support_plan_in_use",
                "message": "Users have subscribed to this plan. Switch it off instead of deleting it.",
            },
        )
    store.delete_support_plan(plan_id)
    return Response(status_code=204)
