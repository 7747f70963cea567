"""FastAPI REST API for the constructmart order service."""

import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import __version__
from .address_store import AddressStore
from .catalog_store import ProductStore
from .errors import (
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidSchemaVersionError,
    InvalidTransitionError,
    MartError,
    MinimumOrderNotMetError,
    NotFoundError,
    UnauthorizedError,
    UserNotFoundError,
    ValidationError,
)
from .models import CUSTOMER, MERCHANT, MERCHANT_APPROVED, MERCHANT_PENDING, Product, User
from .order_store import OrderStore
from .pricing import PricingCalculator
from .settings_store import SettingsStore
from .user_store import TokenStore, UserStore
from .workflow import OrderService, OrderView

logger = logging.getLogger(__name__)


# --- Pydantic Schemas ---


class CamelModel(BaseModel):
    """Wire format is camelCase; fields also accept their Python names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserSchema(CamelModel):
    id: str
    name: str
    email: str
    role: str
    phone: Optional[str] = None
    active: bool = True
    merchant_status: Optional[str] = None
    created_at: str


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(TokenResponse):
    user: UserSchema


class RegisterRequest(CamelModel):
    name: str
    email: str
    password: str
    phone: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class RefreshRequest(CamelModel):
    refresh_token: str


class MerchantStatusRequest(CamelModel):
    status: str


class ProductSchema(CamelModel):
    id: str
    name: str
    price: float
    stock: int
    unit: str
    weight: float = 0.0
    sku: Optional[str] = None
    enabled: bool = True
    created_at: str
    updated_at: str


class ProductCreateRequest(CamelModel):
    name: str
    price: float
    stock: int
    unit: str = "piece"
    weight: float = 0.0
    sku: Optional[str] = None


class ProductUpdateRequest(CamelModel):
    name: Optional[str] = None
    price: Optional[float] = None
    stock: Optional[int] = None
    unit: Optional[str] = None
    weight: Optional[float] = None
    sku: Optional[str] = None
    enabled: Optional[bool] = None


class AddressFields(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    area: Optional[str] = None
    postal_code: Optional[str] = None
    label: Optional[str] = None
    phone: Optional[str] = None


class AddressSchema(CamelModel):
    id: str
    street: str
    city: str
    area: str
    postal_code: str = ""
    label: Optional[str] = None
    phone: Optional[str] = None
    created_at: str
    updated_at: str


class ActorSchema(CamelModel):
    user_id: str
    user_type: str
    user_name: str = ""


class StatusHistorySchema(CamelModel):
    status: str
    timestamp: str
    item_id: Optional[str] = None
    note: Optional[str] = None


class LifecycleEventSchema(CamelModel):
    event_type: str
    timestamp: str
    event_description: str
    triggered_by: ActorSchema
    metadata: dict[str, Any] = Field(default_factory=dict)


class OrderItemSchema(CamelModel):
    id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: float
    total_price: float
    unit: str = ""
    sku: Optional[str] = None
    weight: float = 0.0
    item_status: str
    assigned_merchant_id: Optional[str] = None
    assigned_merchant_name: Optional[str] = None
    rejected_by: list[str] = Field(default_factory=list)


class DeliveryAddressSchema(CamelModel):
    street: str
    city: str
    area: str
    postal_code: str = ""
    label: Optional[str] = None
    phone: Optional[str] = None


class DeliveryConfigSchema(CamelModel):
    type: str
    fixed_charge: float
    free_delivery_threshold: float
    charge_for_below_threshold: float
    per_km_rate: float
    base_distance: float
    per_kg_rate: float
    free_weight_limit: float


class PricingBreakdownSchema(CamelModel):
    tax_rate: float
    platform_fee_rate: float
    delivery_config: DeliveryConfigSchema
    minimum_order_value: float


class OrderSchema(CamelModel):
    id: str
    order_number: str
    order_status: str
    customer_id: str
    customer_name: str
    customer_phone: str
    delivery_address: DeliveryAddressSchema
    items: list[OrderItemSchema]
    subtotal: float
    tax: float
    delivery_charge: float
    platform_fee: float
    total_amount: float
    payment_method: str
    payment_status: str
    pricing_breakdown: Optional[PricingBreakdownSchema] = None
    delivery_instructions: Optional[str] = None
    expected_delivery_date: Optional[str] = None
    actual_delivery_date: Optional[str] = None
    status_history: list[StatusHistorySchema] = Field(default_factory=list)
    lifecycle: list[LifecycleEventSchema] = Field(default_factory=list)
    created_at: str
    updated_at: str


class OrderListResponse(CamelModel):
    orders: list[OrderSchema]
    total: int
    page: int
    total_pages: int


class OrderLineRequest(CamelModel):
    product_id: str
    quantity: int


class OrderCreateRequest(CamelModel):
    """Request body for creating an order. Prices are never accepted from the client."""

    items: list[OrderLineRequest]
    customer_phone: str = ""
    address_id: Optional[str] = None
    customer_address: Optional[AddressFields] = Field(
        default=None,
        validation_alias=AliasChoices("customerAddress", "deliveryAddress", "customer_address"),
    )
    payment_method: str = "cod"
    delivery_instructions: Optional[str] = None


class AssignRequest(CamelModel):
    merchant_id: Optional[str] = None


class StatusUpdateRequest(CamelModel):
    status: str
    note: Optional[str] = None


class ReopenRequest(CamelModel):
    note: Optional[str] = None


class UnassignedItemSchema(CamelModel):
    order_id: str
    order_number: str
    order_created_at: str
    delivery_area: Optional[str] = None
    delivery_city: Optional[str] = None
    item: OrderItemSchema


class UnassignedListResponse(CamelModel):
    items: list[UnassignedItemSchema]
    count: int


class SummaryResponse(CamelModel):
    total_orders: int
    items_by_status: dict[str, int]
    orders_by_status: dict[str, int]
    delivered_revenue: float


class SettingsSchema(CamelModel):
    tax_rate: float
    platform_fee_rate: float
    minimum_order_value: float
    delivery_config: DeliveryConfigSchema
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None


class DeliveryConfigUpdate(CamelModel):
    type: Optional[str] = None
    fixed_charge: Optional[float] = None
    free_delivery_threshold: Optional[float] = None
    charge_for_below_threshold: Optional[float] = None
    per_km_rate: Optional[float] = None
    base_distance: Optional[float] = None
    per_kg_rate: Optional[float] = None
    free_weight_limit: Optional[float] = None


class SettingsUpdateRequest(CamelModel):
    """Partial settings update; only the fields sent are changed."""

    tax_rate: Optional[float] = None
    platform_fee_rate: Optional[float] = None
    minimum_order_value: Optional[float] = None
    delivery_config: Optional[DeliveryConfigUpdate] = None


class PricingRequest(CamelModel):
    items: list[OrderLineRequest]
    distance: float = 0.0


class PricedLineSchema(CamelModel):
    product_id: str
    name: str
    quantity: int
    unit_price: float
    total_price: float
    available: int


class PricingResponse(CamelModel):
    items: list[PricedLineSchema]
    subtotal: float
    tax: float
    delivery_charge: float
    platform_fee: float
    total_amount: float
    total_weight: float
    breakdown: PricingBreakdownSchema
    minimum_order_value: float
    meets_minimum: bool


class PreviewRowSchema(CamelModel):
    order_value: float
    delivery_charge: float
    tax: float
    total: float


class DeliveryPreviewResponse(CamelModel):
    delivery_config: DeliveryConfigSchema
    preview: list[PreviewRowSchema]


# --- Helper Functions ---


def get_user_store() -> UserStore:
    return UserStore()


def get_token_store() -> TokenStore:
    return TokenStore()


def get_product_store() -> ProductStore:
    return ProductStore()


def get_address_store() -> AddressStore:
    return AddressStore()


def get_settings_store() -> SettingsStore:
    return SettingsStore()


def get_order_service() -> OrderService:
    """Build the order service over stores in the configured data directory."""
    return OrderService(
        orders=OrderStore(),
        products=get_product_store(),
        addresses=get_address_store(),
        settings=get_settings_store(),
        users=get_user_store(),
    )


def get_bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization:
        raise UnauthorizedError()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Malformed authorization header")
    return token.strip()


def get_current_user(token: str = Depends(get_bearer_token)) -> User:
    user_id = get_token_store().resolve(token)
    try:
        user = get_user_store().get_user(user_id)
    except UserNotFoundError:
        raise UnauthorizedError("Invalid token") from None
    if not user.active:
        raise UnauthorizedError("User is inactive")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise ForbiddenError("Admin access required")
    return user


def order_to_schema(view: OrderView) -> OrderSchema:
    data = view.order.to_dict()
    data["order_status"] = view.order_status.value
    if not data["pricing_breakdown"]:
        data["pricing_breakdown"] = None
    return OrderSchema.model_validate(data)


def auth_response(user: User, tokens: dict[str, Any]) -> AuthResponse:
    return AuthResponse(user=UserSchema(**user.to_public_dict()), **tokens)


# --- FastAPI App ---


app = FastAPI(
    title="ConstructMart API",
    description="Multi-merchant order service for construction materials",
    version=__version__,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:8081",
        "http://localhost:19006",
        "http://127.0.0.1:8081",
        "http://127.0.0.1:19006",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes; subclasses inherit their base's code
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    InvalidAddressError: 400,
    MinimumOrderNotMetError: 400,
    UnauthorizedError: 401,
    ForbiddenError: 403,
    NotFoundError: 404,
    InsufficientStockError: 409,
    ConflictError: 409,
    InvalidTransitionError: 409,
    InvalidSchemaVersionError: 500,
}


def status_code_for(exc: MartError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(MartError)
async def mart_error_handler(request: Request, exc: MartError) -> JSONResponse:
    """Map MartError subclasses to appropriate HTTP responses."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__, **exc.extra()},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies keep FastAPI's 422 but use the MartError envelope."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    # Drop the leading "body"/"query" segment from the location
    location = [str(part) for part in first.get("loc", ())[1:]]
    field = ".".join(location) or None
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=422,
        content={
            "detail": f"{field}: {message}" if field else message,
            "error_type": ValidationError.__name__,
            "field": field,
            "errors": jsonable_encoder(errors),
        },
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    try:
        products = get_product_store().list_products(include_disabled=True)
        return {"status": "ok", "version": __version__, "product_count": len(products)}
    except MartError as e:
        return {"status": "error", "detail": str(e)}


# --- Auth Endpoints ---


@app.post("/api/auth/register", response_model=AuthResponse, status_code=201)
def register(request: RegisterRequest):
    """Self-registration; always creates a customer account."""
    user = get_user_store().add_user(
        name=request.name,
        email=request.email,
        password=request.password,
        role=CUSTOMER,
        phone=request.phone,
    )
    return auth_response(user, get_token_store().issue(user.id))


@app.post("/api/auth/login", response_model=AuthResponse)
def login(request: LoginRequest):
    user = get_user_store().authenticate(request.email, request.password)
    return auth_response(user, get_token_store().issue(user.id))


@app.post("/api/auth/refresh", response_model=TokenResponse)
def refresh_tokens(request: RefreshRequest):
    """Exchange a refresh token for a new token pair. The old pair stops working."""
    return TokenResponse(**get_token_store().refresh(request.refresh_token))


@app.post("/api/auth/logout")
def logout(token: str = Depends(get_bearer_token)):
    get_token_store().revoke(token)
    return {"success": True}


@app.get("/api/auth/me", response_model=UserSchema)
def me(user: User = Depends(get_current_user)):
    return UserSchema(**user.to_public_dict())


# --- Merchant Endpoints ---


@app.post("/api/merchants/onboard", response_model=UserSchema, status_code=201)
def onboard_merchant(request: RegisterRequest):
    """
    Merchant sign-up.

    The account starts out pending and cannot log in until an admin approves
    it, so no tokens are issued here.
    """
    user = get_user_store().add_user(
        name=request.name,
        email=request.email,
        password=request.password,
        role=MERCHANT,
        phone=request.phone,
        merchant_status=MERCHANT_PENDING,
    )
    return UserSchema(**user.to_public_dict())


@app.get("/api/merchants", response_model=list[UserSchema])
def list_merchants(
    status: Optional[str] = Query(default=None), admin: User = Depends(require_admin)
):
    merchants = get_user_store().list_merchants(status=status)
    return [UserSchema(**m.to_public_dict()) for m in merchants]


@app.put("/api/merchants/{user_id}/status", response_model=UserSchema)
def set_merchant_status(
    user_id: str, request: MerchantStatusRequest, admin: User = Depends(require_admin)
):
    """Approve, reject or suspend a merchant. Leaving approved signs the merchant out."""
    user = get_user_store().set_merchant_status(user_id, request.status)
    if user.merchant_status != MERCHANT_APPROVED:
        get_token_store().revoke_user(user.id)
    return UserSchema(**user.to_public_dict())


# --- Product Endpoints ---


@app.get("/api/products", response_model=list[ProductSchema])
def list_products(
    include_disabled: bool = Query(default=False, alias="includeDisabled"),
    user: User = Depends(get_current_user),
):
    """List catalog products. Disabled products are only listed for admins."""
    store = get_product_store()
    products = store.list_products(include_disabled=include_disabled and user.role == "admin")
    return [ProductSchema(**p.to_dict()) for p in products]


@app.post("/api/products", response_model=ProductSchema, status_code=201)
def create_product(request: ProductCreateRequest, admin: User = Depends(require_admin)):
    product = Product.create(
        name=request.name,
        price=request.price,
        stock=request.stock,
        unit=request.unit,
        weight=request.weight,
        sku=request.sku,
    )
    get_product_store().add_product(product)
    return ProductSchema(**product.to_dict())


@app.get("/api/products/{product_id}", response_model=ProductSchema)
def get_product(product_id: str, user: User = Depends(get_current_user)):
    return ProductSchema(**get_product_store().get_product(product_id).to_dict())


@app.patch("/api/products/{product_id}", response_model=ProductSchema)
def update_product(
    product_id: str, request: ProductUpdateRequest, admin: User = Depends(require_admin)
):
    """Update catalog fields. Existing orders keep the prices they were placed at."""
    updates = request.model_dump(exclude_unset=True)
    product = get_product_store().update_product(product_id, updates)
    return ProductSchema(**product.to_dict())


# --- Address Endpoints ---


@app.get("/api/addresses", response_model=list[AddressSchema])
def list_addresses(user: User = Depends(get_current_user)):
    return [AddressSchema(**a.to_dict()) for a in get_address_store().list_addresses(user.id)]


@app.post("/api/addresses", response_model=AddressSchema, status_code=201)
def add_address(request: AddressFields, user: User = Depends(get_current_user)):
    address = get_address_store().add_address(user.id, request.model_dump())
    return AddressSchema(**address.to_dict())


@app.put("/api/addresses/{address_id}", response_model=AddressSchema)
def update_address(
    address_id: str, request: AddressFields, user: User = Depends(get_current_user)
):
    """Edit a saved address. Orders already placed keep their snapshot."""
    address = get_address_store().update_address(
        user.id, address_id, request.model_dump(exclude_unset=True)
    )
    return AddressSchema(**address.to_dict())


# --- Order Endpoints ---


@app.post("/api/orders", response_model=OrderSchema, status_code=201)
def create_order(
    request: OrderCreateRequest,
    user: User = Depends(get_current_user),
    idempotency_key: Optional[str] = Header(default=None),
):
    """
    Place an order.

    Resending the same ``Idempotency-Key`` returns the order created by the
    first request instead of creating another one.
    """
    service = get_order_service()
    actor = user.actor()
    order = service.create_order(
        actor,
        items=[line.model_dump() for line in request.items],
        customer_phone=request.customer_phone,
        address_id=request.address_id,
        address=request.customer_address.model_dump() if request.customer_address else None,
        payment_method=request.payment_method,
        delivery_instructions=request.delivery_instructions,
        idempotency_key=idempotency_key,
    )
    return order_to_schema(service.view(order, actor))


@app.get("/api/orders", response_model=OrderListResponse)
def list_orders(
    status: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    limit: int = Query(default=10),
    user: User = Depends(get_current_user),
):
    result = get_order_service().list_orders(user.actor(), status=status, page=page, limit=limit)
    return OrderListResponse(
        orders=[order_to_schema(v) for v in result["orders"]],
        total=result["total"],
        page=result["page"],
        total_pages=result["total_pages"],
    )


@app.get("/api/orders/status/unassigned", response_model=UnassignedListResponse)
def list_unassigned_items(user: User = Depends(get_current_user)):
    """Items waiting for a merchant, oldest order first."""
    queue = get_order_service().list_unassigned_items(user.actor())
    items = [
        UnassignedItemSchema.model_validate({**entry, "item": entry["item"].to_dict()})
        for entry in queue
    ]
    return UnassignedListResponse(items=items, count=len(items))


@app.get("/api/orders/analytics/summary", response_model=SummaryResponse)
def order_summary(user: User = Depends(get_current_user)):
    return SummaryResponse(**get_order_service().order_summary(user.actor()))


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
def get_order(order_id: str, user: User = Depends(get_current_user)):
    """Get an order by ID or order number, with its derived status."""
    return order_to_schema(get_order_service().get_order(order_id, user.actor()))


@app.put("/api/orders/{order_id}/items/{item_id}/assign", response_model=OrderSchema)
def assign_item(
    order_id: str,
    item_id: str,
    request: Optional[AssignRequest] = None,
    user: User = Depends(get_current_user),
    idempotency_key: Optional[str] = Header(default=None),
):
    """
    Claim an item (merchant) or assign it to a merchant (admin).

    Of two concurrent claims exactly one succeeds; the other gets 409.
    """
    service = get_order_service()
    actor = user.actor()
    order = service.assign_item(
        order_id,
        item_id,
        actor,
        merchant_id=request.merchant_id if request else None,
        idempotency_key=idempotency_key,
    )
    return order_to_schema(service.view(order, actor))


@app.post("/api/orders/{order_id}/items/{item_id}/reject", response_model=OrderSchema)
def reject_item(order_id: str, item_id: str, user: User = Depends(get_current_user)):
    service = get_order_service()
    actor = user.actor()
    order = service.reject_item(order_id, item_id, actor)
    return order_to_schema(service.view(order, actor))


@app.put("/api/orders/{order_id}/items/{item_id}/reopen", response_model=OrderSchema)
def reopen_item(
    order_id: str,
    item_id: str,
    request: Optional[ReopenRequest] = None,
    admin: User = Depends(require_admin),
):
    """Put a rejected item back in the unassigned queue."""
    service = get_order_service()
    actor = admin.actor()
    order = service.reopen_item(order_id, item_id, actor, note=request.note if request else None)
    return order_to_schema(service.view(order, actor))


@app.put("/api/orders/{order_id}/items/{item_id}/status", response_model=OrderSchema)
def update_item_status(
    order_id: str,
    item_id: str,
    request: StatusUpdateRequest,
    user: User = Depends(get_current_user),
):
    service = get_order_service()
    actor = user.actor()
    order = service.update_item_status(order_id, item_id, request.status, actor, note=request.note)
    return order_to_schema(service.view(order, actor))


# --- Settings Endpoints ---


@app.get("/api/settings", response_model=SettingsSchema, response_model_exclude_none=True)
def get_settings(user: User = Depends(get_current_user)):
    """Current settings; audit fields are only shown to admins."""
    settings = get_settings_store().get()
    data = settings.to_dict() if user.role == "admin" else settings.public_dict()
    return SettingsSchema.model_validate(data)


@app.put("/api/settings", response_model=SettingsSchema)
def update_settings(request: SettingsUpdateRequest, admin: User = Depends(require_admin)):
    updates = request.model_dump(exclude_unset=True)
    settings = get_settings_store().update(updates, updated_by=admin.id)
    return SettingsSchema.model_validate(settings.to_dict())


@app.post("/api/settings/calculate-pricing", response_model=PricingResponse)
def calculate_pricing(request: PricingRequest, user: User = Depends(get_current_user)):
    """Authoritative pricing for a prospective order, from catalog prices."""
    result = get_order_service().calculate_pricing(
        [line.model_dump() for line in request.items], distance=request.distance
    )
    return PricingResponse.model_validate(result)


@app.get("/api/settings/delivery-preview", response_model=DeliveryPreviewResponse)
def delivery_preview(user: User = Depends(get_current_user)):
    settings = get_settings_store().get()
    return DeliveryPreviewResponse.model_validate(
        {
            "delivery_config": settings.delivery_config.to_dict(),
            "preview": PricingCalculator(settings).delivery_preview(),
        }
    )
