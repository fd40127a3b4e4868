"""
API request and response models for the storefront REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, shop/, support/
and content/, which own the internal domain representation. Route handlers map
between the two, usually through a from_* factory colocated with the model.

Wire format: JSON keys are camelCase (the storefront SPA's convention). Every
model derives from ApiModel, which generates the camelCase alias and still
accepts snake_case on input (populate_by_name).

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Module, Permission, Role, RolePermission, User
from content.models import POST_STATUSES, Post, PostType
from shop.models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    Payment,
    PaymentGateway,
    Product,
    ProductVariant,
    SupportPlan,
    SupportSubscription,
)
from support.models import ChatMessage, ChatSession, SlaRule, Ticket, TicketReply, TicketSubjectTemplate


class ApiModel(BaseModel):
    """Base for every request/response model: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(ApiModel):
    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(ApiModel):
    username: str = Field(min_length=1, max_length=255, description="Username or email.")
    password: str = Field(min_length=1, max_length=128)


class RegisterRequest(ApiModel):
    username: str = Field(min_length=3, max_length=100, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)


class MeResponse(ApiModel):
    id: int
    username: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    roles: list[str]
    support_priority_level: int

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            phone=user.phone,
            roles=user.roles,
            support_priority_level=user.support_priority_level,
        )


class LoginResponse(ApiModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: MeResponse


# ---------------------------------------------------------------------------
# Users (admin)
# ---------------------------------------------------------------------------


class UserCreate(ApiModel):
    username: str = Field(min_length=3, max_length=100)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    role_codes: list[str] = Field(default_factory=list, max_length=20)
    is_active: bool = True


class UserPatch(ApiModel):
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    is_active: Optional[bool] = None
    role_codes: Optional[list[str]] = Field(default=None, max_length=20)
    support_priority_level: Optional[int] = Field(default=None, ge=0, le=3)


class UserResponse(ApiModel):
    id: int
    username: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    roles: list[str]
    support_priority_level: int
    is_active: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            phone=user.phone,
            roles=user.roles,
            support_priority_level=user.support_priority_level,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login=user.last_login,
        )


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


class RoleCreate(ApiModel):
    code: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_]+$")
    name: str = Field(min_length=1, max_length=100)
    is_active: bool = True


class RolePatch(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_active: Optional[bool] = None


class RoleResponse(ApiModel):
    id: int
    code: str
    name: str
    is_active: bool
    is_system: bool
    created_at: Optional[str] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            code=role.code,
            name=role.name,
            is_active=role.is_active,
            is_system=role.is_system,
            created_at=role.created_at,
        )


class CatalogEntryCreate(ApiModel):
    """Request body for creating a module or a permission."""

    code: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_]+$")
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class CatalogEntryPatch(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class CatalogEntryResponse(ApiModel):
    id: int
    code: str
    name: str
    description: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: Module | Permission) -> "CatalogEntryResponse":
        return cls(
            id=entry.id,
            code=entry.code,
            name=entry.name,
            description=entry.description,
            created_at=entry.created_at,
        )


class RolePermissionItem(ApiModel):
    module_id: int
    permission_id: int
    is_active: bool = True


class RolePermissionsUpdate(ApiModel):
    items: list[RolePermissionItem] = Field(max_length=500)


class RolePermissionResponse(ApiModel):
    module_id: int
    module_code: str
    permission_id: int
    permission_code: str
    is_active: bool

    @classmethod
    def from_grant(cls, grant: RolePermission) -> "RolePermissionResponse":
        return cls(
            module_id=grant.module_id,
            module_code=grant.module_code,
            permission_id=grant.permission_id,
            permission_code=grant.permission_code,
            is_active=grant.is_active,
        )


class CheckPermissionRequest(ApiModel):
    module_code: str = Field(min_length=1, max_length=50)
    permission_code: str = Field(min_length=1, max_length=50)


class CheckPermissionResponse(ApiModel):
    module_code: str
    permission_code: str
    allowed: bool


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ProductCreate(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    slug: Optional[str] = Field(default=None, max_length=220)
    description: Optional[str] = None
    status: Optional[str] = None


class ProductPatch(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    slug: Optional[str] = Field(default=None, min_length=1, max_length=220)
    description: Optional[str] = None
    status: Optional[str] = None


class ProductResponse(ApiModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    status: str
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_product(cls, product: Product) -> "ProductResponse":
        return cls(
            id=product.id,
            name=product.name,
            slug=product.slug,
            description=product.description,
            status=product.status,
            created_at=product.created_at,
            updated_at=product.updated_at,
        )


class VariantWrite(ApiModel):
    """Request body for creating or replacing a product variant."""

    variant_code: str = Field(min_length=1, max_length=50)
    title: str = Field(min_length=1, max_length=60)
    duration_days: Optional[int] = Field(default=None, ge=0)
    warranty_days: Optional[int] = Field(default=None, ge=0)
    stock_qty: int = Field(default=0, ge=0)
    sell_price: int = Field(ge=0)
    list_price: int = Field(ge=0)
    status: Optional[str] = None


class VariantResponse(ApiModel):
    id: int
    product_id: int
    variant_code: str
    title: str
    duration_days: Optional[int] = None
    warranty_days: Optional[int] = None
    stock_qty: int
    sell_price: int
    list_price: int
    status: str
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_variant(cls, variant: ProductVariant) -> "VariantResponse":
        return cls(
            id=variant.id,
            product_id=variant.product_id,
            variant_code=variant.variant_code,
            title=variant.title,
            duration_days=variant.duration_days,
            warranty_days=variant.warranty_days,
            stock_qty=variant.stock_qty,
            sell_price=variant.sell_price,
            list_price=variant.list_price,
            status=variant.status,
            created_at=variant.created_at,
            updated_at=variant.updated_at,
        )


class StorefrontVariant(ApiModel):
    id: int
    title: str
    duration_days: Optional[int] = None
    sell_price: int
    list_price: int
    in_stock: bool
    status: str


class StorefrontProduct(ApiModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    status: str
    min_price: Optional[int] = None
    variants: list[StorefrontVariant] = Field(default_factory=list)

    @classmethod
    def from_product(cls, product: Product, variants: list[ProductVariant]) -> "StorefrontProduct":
        visible = [v for v in variants if v.status != "INACTIVE"]
        prices = [v.sell_price for v in visible if v.status == "ACTIVE"]
        return cls(
            id=product.id,
            name=product.name,
            slug=product.slug,
            description=product.description,
            status=product.status,
            min_price=min(prices) if prices else None,
            variants=[
                StorefrontVariant(
                    id=v.id,
                    title=v.title,
                    duration_days=v.duration_days,
                    sell_price=v.sell_price,
                    list_price=v.list_price,
                    in_stock=v.stock_qty > 0,
                    status=v.status,
                )
                for v in visible
            ],
        )


# ---------------------------------------------------------------------------
# Cart and checkout
# ---------------------------------------------------------------------------


class CartItemAdd(ApiModel):
    variant_id: int = Field(gt=0)
    quantity: int = Field(default=1, gt=0, le=1000)


class CartItemUpdate(ApiModel):
    quantity: int = Field(le=1000)


class ReceiverEmailUpdate(ApiModel):
    email: EmailStr


class CheckoutRequest(ApiModel):
    email: Optional[EmailStr] = None
    buyer_name: Optional[str] = Field(default=None, max_length=255)
    buyer_phone: Optional[str] = Field(default=None, max_length=32)


class CartItemResponse(ApiModel):
    variant_id: int
    product_id: Optional[int] = None
    product_name: str
    title: str
    quantity: int
    unit_price: int
    line_total: int
    stock_qty: int

    @classmethod
    def from_item(cls, item: CartItem) -> "CartItemResponse":
        return cls(
            variant_id=item.variant_id,
            product_id=item.product_id,
            product_name=item.product_name,
            title=item.title,
            quantity=item.quantity,
            unit_price=item.unit_price,
            line_total=item.quantity * item.unit_price,
            stock_qty=item.stock_qty,
        )


class CartResponse(ApiModel):
    id: int
    status: str
    receiver_email: Optional[str] = None
    total_quantity: int
    total_amount: int
    expires_at: str
    items: list[CartItemResponse]

    @classmethod
    def from_cart(cls, cart: Cart) -> "CartResponse":
        return cls(
            id=cart.id,
            status=cart.status,
            receiver_email=cart.receiver_email,
            total_quantity=cart.total_quantity,
            total_amount=cart.total_amount,
            expires_at=cart.expires_at,
            items=[CartItemResponse.from_item(i) for i in cart.items],
        )


class CheckoutResponse(ApiModel):
    order_id: int
    payment_id: int
    payment_token: str
    amount: int
    checkout_url: str


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderItemResponse(ApiModel):
    variant_id: int
    product_id: int
    title: str
    quantity: int
    unit_price: int

    @classmethod
    def from_item(cls, item: OrderItem) -> "OrderItemResponse":
        return cls(
            variant_id=item.variant_id,
            product_id=item.product_id,
            title=item.title,
            quantity=item.quantity,
            unit_price=item.unit_price,
        )


class OrderResponse(ApiModel):
    id: int
    user_id: Optional[int] = None
    email: str
    total_amount: int
    discount_amount: int
    final_amount: int
    status: str
    reservation_status: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    items: list[OrderItemResponse] = Field(default_factory=list)

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            user_id=order.user_id,
            email=order.email,
            total_amount=order.total_amount,
            discount_amount=order.discount_amount,
            final_amount=order.final_amount,
            status=order.status,
            reservation_status=order.reservation_status,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[OrderItemResponse.from_item(i) for i in order.items],
        )


# ---------------------------------------------------------------------------
# Payments and support plans
# ---------------------------------------------------------------------------


class PaymentResponse(ApiModel):
    payment_id: int
    amount: int
    status: str
    provider: str
    email: Optional[str] = None
    target_type: str
    target_id: int
    provider_order_code: Optional[int] = None
    payment_link_id: Optional[str] = None
    checkout_url: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            payment_id=payment.id,
            amount=payment.amount,
            status=payment.status,
            provider=payment.provider,
            email=payment.email,
            target_type=payment.target_type,
            target_id=payment.target_id,
            provider_order_code=payment.provider_order_code,
            payment_link_id=payment.payment_link_id,
            checkout_url=payment.checkout_url,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
        )


class ReturnPaymentRequest(ApiModel):
    """Body of the confirm/cancel-from-return calls made by the result pages.

    payment_token is the opaque value carried in the PayOS return URL.
    """

    payment_token: str = Field(min_length=16, max_length=64)


class PaymentStatusResponse(ApiModel):
    message: str
    status: Optional[str] = None
    target_type: Optional[str] = None
    target_id: Optional[int] = None

    @classmethod
    def from_payment(cls, message: str, payment: Payment) -> "PaymentStatusResponse":
        return cls(message=message, status=payment.status, target_type=payment.target_type, target_id=payment.target_id)


class SupportPlanPaymentRequest(ApiModel):
    support_plan_id: int = Field(gt=0)


class SupportPlanPaymentResponse(ApiModel):
    payment_id: int
    payment_token: str
    support_plan_id: int
    support_plan_name: str
    priority_level: int
    price: int
    amount: int
    checkout_url: str


class SupportPlanResponse(ApiModel):
    id: int
    name: str
    description: Optional[str] = None
    priority_level: int
    price: int

    @classmethod
    def from_plan(cls, plan: SupportPlan) -> "SupportPlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            priority_level=plan.priority_level,
            price=plan.price,
        )


class CurrentSupportPlanResponse(ApiModel):
    support_priority_level: int
    plan_id: Optional[int] = None
    plan_name: Optional[str] = None
    plan_priority_level: Optional[int] = None
    plan_price: Optional[int] = None
    started_at: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def build(cls, user: User, subscription: Optional[SupportSubscription]) -> "CurrentSupportPlanResponse":
        if subscription is None:
            return cls(support_priority_level=user.support_priority_level)
        return cls(
            support_priority_level=user.support_priority_level,
            plan_id=subscription.plan_id,
            plan_name=subscription.plan_name,
            plan_priority_level=subscription.plan_priority_level,
            plan_price=subscription.plan_price,
            started_at=subscription.started_at,
            expires_at=subscription.expires_at,
        )


# ---------------------------------------------------------------------------
# Settings (admin): payment gateway, support plans, SLA rules, subject templates
# ---------------------------------------------------------------------------


class PaymentGatewayResponse(ApiModel):
    """PayOS settings as shown to the back office; stored secrets are never echoed."""

    name: str
    client_id: Optional[str] = None
    endpoint: Optional[str] = None
    is_active: bool
    has_api_key: bool
    has_checksum_key: bool

    @classmethod
    def from_gateway(cls, gateway: PaymentGateway) -> "PaymentGatewayResponse":
        return cls(
            name=gateway.name,
            client_id=gateway.client_id,
            endpoint=gateway.endpoint,
            is_active=gateway.is_active,
            has_api_key=bool((gateway.api_key or "").strip()),
            has_checksum_key=bool((gateway.checksum_key or "").strip()),
        )


class PaymentGatewayUpdate(ApiModel):
    """Blank apiKey / checksumKey keep the stored secret; omitted fields are unchanged."""

    client_id: Optional[str] = Field(default=None, max_length=200)
    api_key: Optional[str] = Field(default=None, max_length=200)
    checksum_key: Optional[str] = Field(default=None, max_length=200)
    endpoint: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None


class SupportPlanWrite(ApiModel):
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    priority_level: int = Field(ge=0)
    price: int = Field(ge=0)
    is_active: bool = True


class SupportPlanAdminResponse(SupportPlanResponse):
    is_active: bool

    @classmethod
    def from_plan(cls, plan: SupportPlan) -> "SupportPlanAdminResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            priority_level=plan.priority_level,
            price=plan.price,
            is_active=plan.is_active,
        )


class SlaRuleWrite(ApiModel):
    name: str = Field(min_length=1, max_length=120)
    severity: str = Field(min_length=1, max_length=20)
    priority_level: int = Field(ge=0)
    first_response_minutes: int = Field(gt=0)
    resolution_minutes: int = Field(gt=0)
    is_active: bool = True


class SlaRuleResponse(ApiModel):
    id: int
    name: str
    severity: str
    priority_level: int
    first_response_minutes: int
    resolution_minutes: int
    is_active: bool

    @classmethod
    def from_rule(cls, rule: SlaRule) -> "SlaRuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            severity=rule.severity,
            priority_level=rule.priority_level,
            first_response_minutes=rule.first_response_minutes,
            resolution_minutes=rule.resolution_minutes,
            is_active=rule.is_active,
        )


class SubjectTemplateUpdate(ApiModel):
    title: str = Field(min_length=1, max_length=200)
    severity: str = Field(min_length=1, max_length=20)
    category: Optional[str] = Field(default=None, max_length=100)
    is_active: bool = True


class SubjectTemplateCreate(SubjectTemplateUpdate):
    template_code: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class TicketCreate(ApiModel):
    template_code: str = Field(min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=1000)


class TicketAssign(ApiModel):
    assignee_id: int = Field(gt=0)


class TicketReplyCreate(ApiModel):
    message: str = Field(min_length=1, max_length=4000)

    @field_validator("message")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message must not be empty.")
        return value


class SubjectTemplateResponse(ApiModel):
    template_code: str
    title: str
    severity: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_template(cls, template: TicketSubjectTemplate) -> "SubjectTemplateResponse":
        return cls(
            template_code=template.template_code,
            title=template.title,
            severity=template.severity,
            category=template.category,
        )


class SubjectTemplateAdminResponse(SubjectTemplateResponse):
    is_active: bool

    @classmethod
    def from_template(cls, template: TicketSubjectTemplate) -> "SubjectTemplateAdminResponse":
        return cls(
            template_code=template.template_code,
            title=template.title,
            severity=template.severity,
            category=template.category,
            is_active=template.is_active,
        )


class StaffSummary(ApiModel):
    id: int
    username: str
    full_name: Optional[str] = None
    email: str

    @classmethod
    def from_user(cls, user: User) -> "StaffSummary":
        return cls(id=user.id, username=user.username, full_name=user.full_name, email=user.email)


class TicketReplyResponse(ApiModel):
    id: int
    ticket_id: int
    sender_id: int
    sender_name: Optional[str] = None
    message: str
    is_staff_reply: bool
    sent_at: str

    @classmethod
    def from_reply(cls, reply: TicketReply, sender_name: Optional[str] = None) -> "TicketReplyResponse":
        return cls(
            id=reply.id,
            ticket_id=reply.ticket_id,
            sender_id=reply.sender_id,
            sender_name=sender_name,
            message=reply.message,
            is_staff_reply=reply.is_staff_reply,
            sent_at=reply.sent_at,
        )


class TicketResponse(ApiModel):
    id: int
    ticket_code: str
    user_id: int
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    subject: str
    description: Optional[str] = None
    status: str
    severity: str
    priority_level: int
    sla_status: str
    assignment_state: str
    assignee_id: Optional[int] = None
    assignee_name: Optional[str] = None
    first_response_due_at: Optional[str] = None
    first_responded_at: Optional[str] = None
    resolution_due_at: Optional[str] = None
    resolved_at: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_ticket(
        cls, ticket: Ticket, customer: Optional[User] = None, assignee: Optional[User] = None
    ) -> "TicketResponse":
        return cls(
            id=ticket.id,
            ticket_code=ticket.ticket_code,
            user_id=ticket.user_id,
            customer_name=customer.display_name if customer else None,
            customer_email=customer.email if customer else None,
            subject=ticket.subject,
            description=ticket.description,
            status=ticket.status,
            severity=ticket.severity,
            priority_level=ticket.priority_level,
            sla_status=ticket.sla_status,
            assignment_state=ticket.assignment_state,
            assignee_id=ticket.assignee_id,
            assignee_name=assignee.display_name if assignee else None,
            first_response_due_at=ticket.first_response_due_at,
            first_responded_at=ticket.first_responded_at,
            resolution_due_at=ticket.resolution_due_at,
            resolved_at=ticket.resolved_at,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
        )


class TicketDetailResponse(TicketResponse):
    replies: list[TicketReplyResponse] = Field(default_factory=list)
    related_tickets: list[TicketResponse] = Field(default_factory=list)


class TicketPage(ApiModel):
    items: list[TicketResponse]
    total: int
    page: int
    page_size: int


# ---------------------------------------------------------------------------
# Support chat
# ---------------------------------------------------------------------------


class OpenChatRequest(ApiModel):
    initial_message: Optional[str] = Field(default=None, max_length=4000)


class ChatMessageCreate(ApiModel):
    content: str = Field(max_length=4000)


class ChatStaffAssign(ApiModel):
    staff_id: int = Field(gt=0)


class ChatSessionResponse(ApiModel):
    id: int
    customer_id: int
    customer_name: Optional[str] = None
    assigned_staff_id: Optional[int] = None
    assigned_staff_name: Optional[str] = None
    status: str
    priority_level: int
    started_at: str
    last_message_at: Optional[str] = None
    last_message_preview: Optional[str] = None
    closed_at: Optional[str] = None

    @classmethod
    def from_session(
        cls, session: ChatSession, customer: Optional[User] = None, staff: Optional[User] = None
    ) -> "ChatSessionResponse":
        return cls(
            id=session.id,
            customer_id=session.customer_id,
            customer_name=customer.display_name if customer else None,
            assigned_staff_id=session.assigned_staff_id,
            assigned_staff_name=staff.display_name if staff else None,
            status=session.status,
            priority_level=session.priority_level,
            started_at=session.started_at,
            last_message_at=session.last_message_at,
            last_message_preview=session.last_message_preview,
            closed_at=session.closed_at,
        )


class OpenChatResponse(ChatSessionResponse):
    is_new: bool
    has_previous_closed_session: bool = False
    last_closed_session_id: Optional[int] = None
    last_closed_at: Optional[str] = None


class ChatMessageResponse(ApiModel):
    id: int
    session_id: int
    sender_id: int
    content: str
    is_from_staff: bool
    sent_at: str

    @classmethod
    def from_message(cls, message: ChatMessage) -> "ChatMessageResponse":
        return cls(
            id=message.id,
            session_id=message.session_id,
            sender_id=message.sender_id,
            content=message.content,
            is_from_staff=message.is_from_staff,
            sent_at=message.sent_at,
        )


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------


class PostTypeWrite(ApiModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class PostTypeResponse(ApiModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None
    created_at: str

    @classmethod
    def from_post_type(cls, post_type: PostType) -> "PostTypeResponse":
        return cls(
            id=post_type.id,
            name=post_type.name,
            slug=post_type.slug,
            description=post_type.description,
            created_at=post_type.created_at,
        )


class PostWrite(ApiModel):
    title: str = Field(min_length=1, max_length=250)
    slug: Optional[str] = Field(default=None, max_length=260)
    short_description: Optional[str] = Field(default=None, max_length=500)
    content: Optional[str] = None
    thumbnail: Optional[str] = Field(default=None, max_length=500)
    post_type_id: Optional[int] = None
    status: str = "Draft"

    @field_validator("status")
    @classmethod
    def known_status(cls, value: str) -> str:
        for status in POST_STATUSES:
            if status.lower() == value.strip().lower():
                return status
        raise ValueError(f"status must be one of {', '.join(POST_STATUSES)}")


class PostResponse(ApiModel):
    id: int
    title: str
    slug: str
    short_description: Optional[str] = None
    content: Optional[str] = None
    thumbnail: Optional[str] = None
    post_type_id: Optional[int] = None
    author_id: Optional[int] = None
    status: str
    view_count: int
    created_at: str
    updated_at: Optional[str] = None

    @classmethod
    def from_post(cls, post: Post) -> "PostResponse":
        return cls(
            id=post.id,
            title=post.title,
            slug=post.slug,
            short_description=post.short_description,
            content=post.content,
            thumbnail=post.thumbnail,
            post_type_id=post.post_type_id,
            author_id=post.author_id,
            status=post.status,
            view_count=post.view_count,
            created_at=post.created_at,
            updated_at=post.updated_at,
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationCreate(ApiModel):
    """Broadcast request. Exactly one target: global, a role code, or a user id."""

    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)
    role_code: Optional[str] = Field(default=None, max_length=50)
    user_id: Optional[int] = Field(default=None, gt=0)
    data: Optional[dict[str, Any]] = None


class NotificationResponse(ApiModel):
    group: str
    delivered: int
