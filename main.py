import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import (
    Database,
    EmptyCartError,
    InsufficientStockError,
    ProductInUseError,
    get_database,
)
from schemas import MAX_ID
from security import issue_token, user_id_from_token

API_VERSION = "1.0.0"

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="E-Commerce Admin API", version=API_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Response envelope

def envelope(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message is not None:
        body["message"] = message
    return body


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{field}: {err.get('msg')}" if field else err.get("msg"))
    return JSONResponse(status_code=400, content={"success": False, "error": "; ".join(problems)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


def parse_id(value: str, label: str) -> int:
    try:
        obj_id = int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label} ID")
    if not 1 <= obj_id <= MAX_ID:
        raise HTTPException(status_code=400, detail=f"Invalid {label} ID")
    return obj_id


# Auth models
class SignupInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


# Dependency to get current user

def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Database = Depends(get_database),
):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = db.find_user_by_id(user_id_from_token(authorization.split(" ", 1)[1]))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(current_user: dict = Depends(get_current_user)):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


# Routes
@app.get("/")
def read_root():
    return {"message": "E-Commerce Admin API"}


# Health resolves the database itself so a failure to open it is reported, not raised.
def database_provider():
    return get_database


@app.get("/api/health")
def health(connect=Depends(database_provider)):
    response = {
        "success": True,
        "message": "API is healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": API_VERSION,
        "database": "Not Connected",
    }
    try:
        connect().ping()
        response["database"] = "Connected"
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
        response["database"] = f"Error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/auth/signup")
def signup(payload: SignupInput, db: Database = Depends(get_database)):
    email = payload.email.lower()
    if db.find_user_by_email(email):
        raise HTTPException(status_code=409, detail="An account with this email already exists")
    user = db.create_user(name=payload.name, email=email, password=payload.password)
    if not user:
        raise HTTPException(status_code=409, detail="An account with this email already exists")
    logger.info("Created account %s", email)
    return envelope(user, "Account created successfully")


@app.post("/api/auth/login")
def login(payload: LoginInput, db: Database = Depends(get_database)):
    email = payload.email.lower()
    user = db.validate_user(email, payload.password)
    if not user:
        logger.info("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    token = issue_token(user)
    logger.info("User %s logged in", user["id"])
    return envelope({"user": user, "token": token}, "Login successful")


@app.get("/api/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return envelope(current_user)


# Products
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    stock: int = Field(..., ge=0, le=MAX_ID)
    category: str = Field(..., min_length=1)
    image: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0, le=MAX_ID)
    category: Optional[str] = None
    image: Optional[str] = None


# Columns that cannot be cleared with an explicit null.
REQUIRED_PRODUCT_FIELDS = ("name", "price", "stock")


@app.get("/api/products")
def list_products(db: Database = Depends(get_database)):
    return envelope(db.get_all_products(), "Products retrieved successfully")


@app.post("/api/products", status_code=201)
def create_product(data: ProductIn, db: Database = Depends(get_database), admin: dict = Depends(require_admin)):
    product = db.create_product(data.model_dump())
    logger.info("Admin %s created product %s", admin["id"], product["id"])
    return envelope(product, "Product created successfully")


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_database)):
    product = db.get_product_by_id(parse_id(product_id, "product"))
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return envelope(product)


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    data: ProductUpdate,
    db: Database = Depends(get_database),
    admin: dict = Depends(require_admin),
):
    obj_id = parse_id(product_id, "product")
    update_dict = {
        k: v
        for k, v in data.model_dump(exclude_unset=True).items()
        if v is not None or k not in REQUIRED_PRODUCT_FIELDS
    }
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    product = db.update_product(obj_id, update_dict)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return envelope(product, "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_database), admin: dict = Depends(require_admin)):
    obj_id = parse_id(product_id, "product")
    try:
        deleted = db.delete_product(obj_id)
    except ProductInUseError:
        raise HTTPException(status_code=409, detail="Product has existing orders and cannot be deleted")
    if not deleted:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Admin %s deleted product %s", admin["id"], obj_id)
    return envelope(message="Product deleted successfully")


# Store
@app.get("/api/store/products")
def list_store_products(db: Database = Depends(get_database)):
    available = [p for p in db.get_all_products() if p["stock"] > 0]
    return envelope(available)


@app.get("/api/store/categories")
def list_store_categories(db: Database = Depends(get_database)):
    return envelope(db.get_unique_product_categories())


# Cart
class CartAddInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(..., alias="productId", ge=1, le=MAX_ID)
    quantity: int = Field(1, ge=1, le=MAX_ID)


class CartUpdateInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_item_id: int = Field(..., alias="cartItemId", ge=1, le=MAX_ID)
    quantity: int = Field(..., le=MAX_ID)


class CartRemoveInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_item_id: int = Field(..., alias="cartItemId", ge=1, le=MAX_ID)


@app.get("/api/cart")
def get_cart(db: Database = Depends(get_database), current_user: dict = Depends(get_current_user)):
    return envelope(db.get_cart_items(current_user["id"]))


@app.post("/api/cart")
def add_to_cart(item: CartAddInput, db: Database = Depends(get_database), current_user: dict = Depends(get_current_user)):
    cart_item = db.add_to_cart(current_user["id"], item.product_id, item.quantity)
    if not cart_item:
        raise HTTPException(status_code=404, detail="Product not found")
    return envelope(cart_item, "Item added to cart")


@app.put("/api/cart")
def update_cart(item: CartUpdateInput, db: Database = Depends(get_database), current_user: dict = Depends(get_current_user)):
    if not db.update_cart_item_quantity(current_user["id"], item.cart_item_id, item.quantity):
        raise HTTPException(status_code=404, detail="Cart item not found")
    return envelope(message="Cart updated")


@app.delete("/api/cart/{cart_item_id}")
def remove_cart_item(cart_item_id: str, db: Database = Depends(get_database), current_user: dict = Depends(get_current_user)):
    if not db.remove_cart_item(current_user["id"], parse_id(cart_item_id, "cart item")):
        raise HTTPException(status_code=404, detail="Cart item not found")
    return envelope(message="Item removed from cart")


@app.delete("/api/cart")
def delete_from_cart(
    item: Optional[CartRemoveInput] = None,
    db: Database = Depends(get_database),
    current_user: dict = Depends(get_current_user),
):
    # With a {cartItemId} body only that line goes; without a body the whole cart is cleared.
    if item is not None:
        if not db.remove_cart_item(current_user["id"], item.cart_item_id):
            raise HTTPException(status_code=404, detail="Cart item not found")
        return envelope(message="Item removed from cart")
    db.clear_cart(current_user["id"])
    return envelope(message="Cart cleared")


@app.post("/api/cart/checkout", status_code=201)
def checkout(db: Database = Depends(get_database), current_user: dict = Depends(get_current_user)):
    try:
        order = db.checkout(current_user["id"])
    except EmptyCartError:
        raise HTTPException(status_code=400, detail="Cart is empty")
    except InsufficientStockError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return envelope(order, "Order placed successfully")


# Orders
@app.get("/api/orders")
def list_orders(db: Database = Depends(get_database), current_user: dict = Depends(get_current_user)):
    orders: List[Dict[str, Any]] = db.get_orders(current_user["id"])
    return envelope(orders)


# Dashboard
@app.get("/api/dashboard")
def dashboard(db: Database = Depends(get_database), admin: dict = Depends(require_admin)):
    return envelope(db.get_dashboard_stats(), "Dashboard stats retrieved successfully")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
