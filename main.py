import logging
import os
import shutil
import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from pymongo.errors import PyMongoError

import auth
import catalog
import database
import orders
import payments
from auth import Identity, get_identity, require_role
from config import settings
from errors import Internal, InvalidInput, ShopError
from schemas import public_user
from store import MongoStore, ProductFilter, Store

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s - %(message)s")
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = (".jpg", ".jpeg", ".png")

app = FastAPI(title=settings.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")

router = APIRouter(prefix=settings.API_PREFIX)


# Error mapping
@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "header")]
        if loc and loc[-1] not in fields:
            fields.append(loc[-1])
    err = InvalidInput("Invalid or missing fields: " + ", ".join(fields) if fields else "Invalid request", fields=fields)
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    err = Internal("Database error")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


# Utility helpers
def get_store(request: Request) -> Store:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise Internal("Database not configured")
    return store


def save_upload(image: Optional[UploadFile], prefix: str) -> Optional[str]:
    """Store an uploaded image under UPLOAD_DIR and return its public path."""
    if image is None or not image.filename:
        return None
    ext = os.path.splitext(image.filename)[1].lower()
    if ext not in ALLOWED_IMAGE_TYPES:
        raise InvalidInput("Image must be JPG, JPEG, or PNG format", fields=["image"])
    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    filename = f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{ext}"
    with open(os.path.join(settings.UPLOAD_DIR, filename), "wb") as out:
        shutil.copyfileobj(image.file, out)
    return f"/uploads/{filename}"


@app.on_event("startup")
def startup():
    if getattr(app.state, "store", None) is None:
        try:
            app.state.store = MongoStore(database.connect())
            app.state.store.ensure_indexes()
        except PyMongoError as e:
            logger.error("MongoDB unavailable, API will answer 500 until restart: %s", e)
            app.state.store = None
            return
    catalog.seed_categories(app.state.store)


@app.on_event("shutdown")
def shutdown():
    database.close()


# Request models
class RegisterRequest(BaseModel):
    username: str
    password: str
    email: str
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class CreateOrderRequest(BaseModel):
    product_id: str
    quantity: int
    shipping_address: Optional[str] = None
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class PaymentRequest(BaseModel):
    amount: float
    currency: str = "THB"


class RoleRequest(BaseModel):
    role: str


@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} running"}


@router.get("/health")
def health(request: Request):
    store = getattr(request.app.state, "store", None)
    if store is None:
        db_state = "not configured"
    elif isinstance(store, MongoStore):
        db_state = "mongodb"
    else:
        db_state = "memory"
    return {"status": "ok", "database": db_state}


# Auth endpoints
@router.post("/register", status_code=201)
def register(req: RegisterRequest, store: Store = Depends(get_store)):
    user = auth.register(store, req.username, req.password, req.email, req.phone)
    return {"message": "User registered", "userId": user["id"]}


@router.post("/login")
def login(req: LoginRequest, store: Store = Depends(get_store)):
    result = auth.login(store, req.username, req.password)
    return {"message": "Login successful", **result}


# Users
@router.get("/users/me")
def get_me(identity: Identity = Depends(get_identity), store: Store = Depends(get_store)):
    return auth.get_user(store, identity.user_id)


@router.put("/users/me")
def update_me(
    username: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    store: Store = Depends(get_store),
):
    image_uri = save_upload(image, "profile")
    fields = {"username": username, "email": email, "phone": phone, "image_uri": image_uri}
    return auth.update_profile(store, identity, fields)


# Categories
@router.get("/categories")
def list_categories(store: Store = Depends(get_store)):
    return catalog.list_categories(store)


@router.post("/categories")
def create_category(
    name: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    store: Store = Depends(get_store),
):
    category = catalog.create_category(store, name, save_upload(image, "category"))
    return {"message": "Category created", "category": category}


# Products
@router.get("/products")
def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    hide_out_of_stock: bool = Query(True, alias="hideOutOfStock"),
    store: Store = Depends(get_store),
):
    filters = ProductFilter(
        search=search or None,
        category=category or None,
        min_price=min_price,
        max_price=max_price,
        hide_out_of_stock=hide_out_of_stock,
    )
    return catalog.list_products(store, filters)


@router.get("/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    return catalog.get_product(store, product_id)


@router.post("/products")
def create_product(
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    size: Optional[str] = Form(None),
    color: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    store: Store = Depends(get_store),
):
    fields = {
        "title": title,
        "description": description,
        "price": price,
        "category": category,
        "size": size,
        "color": color,
        "stock": stock,
    }
    # validate before touching the disk
    catalog.clean_product_fields(fields, partial=False)
    fields["image_uri"] = save_upload(image, "product")
    product_id = catalog.create_product(store, identity, fields)
    return {"message": "Product created", "productId": product_id}


@router.put("/products/{product_id}")
def update_product(
    product_id: str,
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    size: Optional[str] = Form(None),
    color: Optional[str] = Form(None),
    stock: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_identity),
    store: Store = Depends(get_store),
):
    patch = {
        "title": title,
        "description": description,
        "price": price,
        "category": category,
        "size": size,
        "color": color,
        "stock": stock,
    }
    # ownership and field checks run before the image is written
    catalog.check_owner(catalog.get_product(store, product_id), identity)
    catalog.clean_product_fields(patch, partial=True)
    patch["image_uri"] = save_upload(image, "product")
    return catalog.update_product(store, product_id, identity, patch)


@router.delete("/products/{product_id}")
def delete_product(product_id: str, identity: Identity = Depends(get_identity), store: Store = Depends(get_store)):
    catalog.delete_product(store, product_id, identity)
    return {"deleted": True}


# Orders
@router.post("/orders")
def create_order(req: CreateOrderRequest, identity: Identity = Depends(get_identity), store: Store = Depends(get_store)):
    return orders.create_order(
        store,
        identity,
        req.product_id,
        req.quantity,
        shipping_address=req.shipping_address,
        payment_method=req.payment_method,
        payment_id=req.payment_id,
    )


@router.get("/orders")
def list_orders(identity: Identity = Depends(get_identity), store: Store = Depends(get_store)):
    return orders.list_orders(store, identity.user_id)


@router.get("/orders/{order_id}")
def get_order(order_id: str, identity: Identity = Depends(get_identity), store: Store = Depends(get_store)):
    return orders.get_order(store, order_id, identity)


@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    req: StatusRequest,
    identity: Identity = Depends(get_identity),
    store: Store = Depends(get_store),
):
    return orders.update_order_status(store, order_id, identity, req.status)


# Payments (mock)
@router.post("/payments")
async def create_payment(req: PaymentRequest, identity: Identity = Depends(get_identity)):
    return await payments.process_payment(identity, req.amount, req.currency)


# Admin
@router.get("/admin/users")
def admin_users(identity: Identity = Depends(require_role("admin")), store: Store = Depends(get_store)):
    return [public_user(u) for u in store.list_users()]


@router.get("/admin/orders")
def admin_orders(identity: Identity = Depends(require_role("admin")), store: Store = Depends(get_store)):
    return orders.list_all_orders(store)


@router.get("/admin/products")
def admin_products(identity: Identity = Depends(require_role("admin")), store: Store = Depends(get_store)):
    return catalog.list_products(store, ProductFilter(hide_out_of_stock=False))


@router.put("/admin/users/{user_id}/role")
def admin_set_role(
    user_id: str,
    req: RoleRequest,
    identity: Identity = Depends(require_role("admin")),
    store: Store = Depends(get_store),
):
    return {"message": "Role updated", "user": auth.set_role(store, user_id, req.role)}


app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
