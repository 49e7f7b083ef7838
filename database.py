"""
Relational data-access layer.

One `Database` class serves both SQLite and Postgres through SQLAlchemy:
the engine is built from DATABASE_URL and every query goes through the
ORM models in models.py. Rows leave this module as plain dicts shaped by
the pydantic schemas in schemas.py.

Use `get_database()` to obtain the process-wide instance.
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, delete, event, func, select, text, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, selectinload, sessionmaker

from models import Base, CartItemModel, OrderItemModel, OrderModel, ProductModel, UserModel
from schemas import (
    CartItem,
    CartItemWithProduct,
    DashboardStats,
    Order,
    Product as ProductSchema,
    User as UserSchema,
)
from security import hash_password, verify_password

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./ecommerce.db")

# Postgres pool, sized to cover FastAPI's default worker threadpool (40).
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "30"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))

SUPPORTED_BACKENDS = ("sqlite", "postgresql")

# Execution option marking a session that will write; SQLite takes the write lock up front.
SQLITE_WRITE_LOCK = "sqlite_write_lock"

LOW_STOCK_THRESHOLD = 10
# Revenue estimate: units sold are assumed to be the gap to this opening stock.
BASELINE_STOCK = 50

PRODUCT_COLUMNS = ("name", "description", "price", "stock", "category", "image")

SEED_USERS = [
    {"email": "admin@example.com", "name": "Admin User", "password": "admin123", "role": "admin"},
    {"email": "john@example.com", "name": "John Doe", "password": "john123", "role": "user"},
    {"email": "jane@example.com", "name": "Jane Smith", "password": "jane123", "role": "user"},
    {"email": "manager@example.com", "name": "Store Manager", "password": "manager123", "role": "admin"},
]

SEED_PRODUCTS = [
    {
        "name": "Wireless Headphones",
        "description": "High-quality wireless headphones with noise cancellation",
        "price": 299.99,
        "stock": 25,
        "category": "Electronics",
    },
    {
        "name": "Smart Watch",
        "description": "Advanced smartwatch with health monitoring",
        "price": 199.99,
        "stock": 15,
        "category": "Electronics",
    },
    {
        "name": "Coffee Maker",
        "description": "Automatic coffee maker with programmable settings",
        "price": 89.99,
        "stock": 8,
        "category": "Appliances",
    },
    {
        "name": "Bluetooth Speaker",
        "description": "Portable bluetooth speaker with excellent sound quality",
        "price": 59.99,
        "stock": 32,
        "category": "Electronics",
    },
    {
        "name": "Desk Lamp",
        "description": "LED desk lamp with adjustable brightness",
        "price": 39.99,
        "stock": 5,
        "category": "Office",
    },
    {
        "name": "Laptop Stand",
        "description": "Ergonomic laptop stand for better posture",
        "price": 49.99,
        "stock": 18,
        "category": "Office",
    },
    {
        "name": "Wireless Mouse",
        "description": "Ergonomic wireless mouse with precision tracking",
        "price": 29.99,
        "stock": 45,
        "category": "Electronics",
    },
    {
        "name": "Phone Case",
        "description": "Protective phone case with shock absorption",
        "price": 19.99,
        "stock": 3,
        "category": "Accessories",
    },
]


class DatabaseError(Exception):
    pass


class ProductInUseError(DatabaseError):
    pass


class EmptyCartError(DatabaseError):
    pass


class InsufficientStockError(DatabaseError):
    def __init__(self, product_name: str, requested: int, available: int):
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: requested {requested}, available {available}"
        )


def _dump(schema, obj) -> Dict[str, Any]:
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)


def _engine_options(url: str) -> Dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False, "timeout": 10}}
    return {
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
        "pool_timeout": DB_POOL_TIMEOUT,
        "pool_pre_ping": True,
    }


def _configure_sqlite(engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # The driver's own implicit BEGIN is disabled; _on_begin emits it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(SQLITE_WRITE_LOCK):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


class Database:
    def __init__(self, url: str):
        self.url = url
        self.engine = create_engine(url, **_engine_options(url))
        if self.engine.dialect.name == "sqlite":
            _configure_sqlite(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._initialized = False
        self._init_lock = threading.Lock()

    @contextmanager
    def session(self, write: bool = False):
        """Yield a session that commits on success and rolls back on error.

        Pass write=True for read-then-write work: on SQLite the transaction
        then starts with BEGIN IMMEDIATE, other sessions use a deferred BEGIN.
        """
        session = self.SessionLocal()
        try:
            if write:
                session.connection(execution_options={SQLITE_WRITE_LOCK: True})
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Setup

    def initialize(self) -> None:
        """Create missing tables and seed an empty database. Safe to call repeatedly."""
        with self._init_lock:
            if self._initialized:
                return
            Base.metadata.create_all(self.engine)
            with self.session(write=True) as session:
                if session.scalar(select(func.count()).select_from(UserModel)) == 0:
                    self._seed(session)
            self._initialized = True
            logger.info("Database initialized (%s)", self.engine.dialect.name)

    def _seed(self, session) -> None:
        for user in SEED_USERS:
            session.add(
                UserModel(
                    email=user["email"],
                    name=user["name"],
                    password_hash=hash_password(user["password"]),
                    role=user["role"],
                )
            )
        for data in SEED_PRODUCTS:
            session.add(ProductModel(**ProductSchema(**data).model_dump(include=set(PRODUCT_COLUMNS))))
        session.flush()
        logger.info("Seeded %d users and %d products", len(SEED_USERS), len(SEED_PRODUCTS))

    def ping(self) -> bool:
        with self.session() as session:
            session.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()

    # Users

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self.session() as session:
            user = session.scalars(select(UserModel).where(UserModel.email == email)).first()
            return _dump(UserSchema, user) if user else None

    def find_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        with self.session() as session:
            user = session.get(UserModel, user_id)
            return _dump(UserSchema, user) if user else None

    def create_user(self, name: str, email: str, password: str, role: str = "user") -> Optional[Dict[str, Any]]:
        """Insert a user with a hashed password. Returns None when the email is taken."""
        user = UserSchema(name=name, email=email, role=role, password_hash=hash_password(password))
        try:
            with self.session(write=True) as session:
                row = UserModel(email=user.email, name=user.name, password_hash=user.password_hash, role=user.role)
                session.add(row)
                session.flush()
                created = _dump(UserSchema, row)
        except IntegrityError:
            logger.info("Rejected duplicate signup for %s", email)
            return None
        return created

    def validate_user(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        with self.session() as session:
            user = session.scalars(select(UserModel).where(UserModel.email == email)).first()
            if not user or not verify_password(password, user.password_hash):
                return None
            return _dump(UserSchema, user)

    # Products

    def get_all_products(self) -> List[Dict[str, Any]]:
        with self.session() as session:
            rows = session.scalars(
                select(ProductModel).order_by(ProductModel.created_at.desc(), ProductModel.id.desc())
            ).all()
            return [_dump(ProductSchema, row) for row in rows]

    def get_product_by_id(self, product_id: int) -> Optional[Dict[str, Any]]:
        with self.session() as session:
            product = session.get(ProductModel, product_id)
            return _dump(ProductSchema, product) if product else None

    def create_product(self, data: Dict[str, Any]) -> Dict[str, Any]:
        product = ProductSchema(**data)
        with self.session(write=True) as session:
            row = ProductModel(**product.model_dump(include=set(PRODUCT_COLUMNS)))
            session.add(row)
            session.flush()
            return _dump(ProductSchema, row)

    def update_product(self, product_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply a partial update. Unknown keys are ignored; returns None if nothing matched."""
        fields = {k: v for k, v in data.items() if k in PRODUCT_COLUMNS}
        if not fields:
            return None
        with self.session(write=True) as session:
            product = session.get(ProductModel, product_id)
            if product is None:
                return None
            for column, value in fields.items():
                setattr(product, column, value)
            product.updated_at = func.now()
            session.flush()
            return _dump(ProductSchema, product)

    def delete_product(self, product_id: int) -> bool:
        with self.session(write=True) as session:
            product = session.get(ProductModel, product_id)
            if product is None:
                return False
            ordered = session.scalar(
                select(func.count()).select_from(OrderItemModel).where(OrderItemModel.product_id == product_id)
            )
            if ordered > 0:
                raise ProductInUseError(f"Product {product_id} is referenced by existing orders")
            session.execute(delete(CartItemModel).where(CartItemModel.product_id == product_id))
            session.delete(product)
        return True

    def get_unique_product_categories(self) -> List[str]:
        with self.session() as session:
            return list(
                session.scalars(
                    select(ProductModel.category)
                    .where(ProductModel.category.is_not(None))
                    .distinct()
                    .order_by(ProductModel.category)
                )
            )

    # Cart

    def get_cart_items(self, user_id: int) -> List[Dict[str, Any]]:
        with self.session() as session:
            rows = session.scalars(
                select(CartItemModel)
                .options(joinedload(CartItemModel.product))
                .where(CartItemModel.user_id == user_id)
                .order_by(CartItemModel.id)
            ).all()
            return [_dump(CartItemWithProduct, row) for row in rows]

    def _lock_user(self, session, user_id: int) -> None:
        # Serialises cart writes per user; FOR UPDATE is dropped on SQLite, where BEGIN IMMEDIATE covers it.
        session.execute(select(UserModel.id).where(UserModel.id == user_id).with_for_update())

    def add_to_cart(self, user_id: int, product_id: int, quantity: int) -> Optional[Dict[str, Any]]:
        """Add `quantity` of a product to the user's cart, merging with an existing line.

        The lookup and the write share one transaction that holds the user's
        lock, so concurrent adds for the same user cannot both insert.
        Returns None when the product does not exist.
        """
        with self.session(write=True) as session:
            self._lock_user(session, user_id)
            if session.get(ProductModel, product_id) is None:
                return None
            item = session.scalars(
                select(CartItemModel).where(
                    CartItemModel.user_id == user_id, CartItemModel.product_id == product_id
                )
            ).first()
            if item:
                item.quantity += quantity
            else:
                item = CartItemModel(user_id=user_id, product_id=product_id, quantity=quantity)
                session.add(item)
            session.flush()
            return _dump(CartItem, item)

    def update_cart_item_quantity(self, user_id: int, cart_item_id: int, quantity: int) -> bool:
        if quantity <= 0:
            return self.remove_cart_item(user_id, cart_item_id)
        with self.session(write=True) as session:
            result = session.execute(
                update(CartItemModel)
                .where(CartItemModel.id == cart_item_id, CartItemModel.user_id == user_id)
                .values(quantity=quantity)
            )
            return result.rowcount > 0

    def remove_cart_item(self, user_id: int, cart_item_id: int) -> bool:
        with self.session(write=True) as session:
            result = session.execute(
                delete(CartItemModel).where(CartItemModel.id == cart_item_id, CartItemModel.user_id == user_id)
            )
            return result.rowcount > 0

    def clear_cart(self, user_id: int) -> None:
        with self.session(write=True) as session:
            session.execute(delete(CartItemModel).where(CartItemModel.user_id == user_id))

    # Orders

    def checkout(self, user_id: int) -> Dict[str, Any]:
        """Turn the user's cart into an order at current prices and decrement stock."""
        with self.session(write=True) as session:
            self._lock_user(session, user_id)
            lines = session.scalars(
                select(CartItemModel).where(CartItemModel.user_id == user_id).order_by(CartItemModel.id)
            ).all()
            if not lines:
                raise EmptyCartError("Cart is empty")
            products = {
                p.id: p
                for p in session.scalars(
                    select(ProductModel)
                    .where(ProductModel.id.in_([line.product_id for line in lines]))
                    .with_for_update()
                )
            }
            for line in lines:
                product = products[line.product_id]
                if line.quantity > product.stock:
                    raise InsufficientStockError(product.name, line.quantity, product.stock)

            order = OrderModel(
                user_id=user_id,
                total_amount=round(sum(products[line.product_id].price * line.quantity for line in lines), 2),
                status="completed",
            )
            for line in lines:
                product = products[line.product_id]
                order.items.append(
                    OrderItemModel(product_id=product.id, quantity=line.quantity, price=product.price)
                )
                product.stock -= line.quantity
                product.updated_at = func.now()
            session.add(order)
            session.execute(delete(CartItemModel).where(CartItemModel.user_id == user_id))
            session.flush()
            placed = _dump(Order, order)
        logger.info("User %s placed order %s (total %.2f)", user_id, placed["id"], placed["total_amount"])
        return placed

    def get_orders(self, user_id: int) -> List[Dict[str, Any]]:
        with self.session() as session:
            rows = session.scalars(
                select(OrderModel)
                .options(selectinload(OrderModel.items))
                .where(OrderModel.user_id == user_id)
                .order_by(OrderModel.ordered_at.desc(), OrderModel.id.desc())
            ).all()
            return [_dump(Order, row) for row in rows]

    # Dashboard

    def get_dashboard_stats(self) -> Dict[str, Any]:
        with self.session() as session:
            total_products = session.scalar(select(func.count()).select_from(ProductModel))
            low_stock = session.scalar(
                select(func.count()).select_from(ProductModel).where(ProductModel.stock < LOW_STOCK_THRESHOLD)
            )
            revenue = session.scalar(select(func.sum(ProductModel.price * (BASELINE_STOCK - ProductModel.stock))))
            total_orders = session.scalar(select(func.count()).select_from(OrderModel))
        stats = DashboardStats(
            total_products=total_products,
            total_revenue=round(float(revenue or 0), 2),
            total_orders=total_orders,
            low_stock_items=low_stock,
        )
        return stats.model_dump(by_alias=True)


def create_database(url: str) -> Database:
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    backend = make_url(url).get_backend_name()
    if backend not in SUPPORTED_BACKENDS:
        raise ValueError(f"Unsupported DATABASE_URL backend: {backend}")
    return Database(url)


_db_instance: Optional[Database] = None
_db_lock = threading.Lock()


def get_database() -> Database:
    global _db_instance
    if _db_instance is None:
        with _db_lock:
            if _db_instance is None:
                db = create_database(DATABASE_URL)
                db.initialize()
                _db_instance = db
    return _db_instance
