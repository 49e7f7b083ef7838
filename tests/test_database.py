import threading

import pytest
from sqlalchemy.pool import QueuePool

from database import (
    EmptyCartError,
    InsufficientStockError,
    ProductInUseError,
    SEED_PRODUCTS,
    SEED_USERS,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT,
    Database,
    create_database,
)
from models import ProductModel

JOHN = 2
JANE = 3
COFFEE_MAKER = 3
PHONE_CASE = 8


def test_seeds_empty_database_once(db):
    assert len(db.get_all_products()) == len(SEED_PRODUCTS)
    db2 = Database(db.url)
    db2.initialize()
    assert len(db2.get_all_products()) == len(SEED_PRODUCTS)
    for seed in SEED_USERS:
        assert db2.find_user_by_email(seed["email"])["role"] == seed["role"]
    db2.close()


def test_create_database_selects_backend(tmp_path):
    database = create_database(f"sqlite:///{tmp_path / 'x.db'}")
    assert database.engine.dialect.name == "sqlite"
    database.close()
    assert create_database("postgres://shop@localhost/shop").engine.dialect.name == "postgresql"
    with pytest.raises(ValueError):
        create_database("mysql://localhost/shop")


def test_validate_user(db):
    user = db.validate_user("admin@example.com", "admin123")
    assert user["name"] == "Admin User"
    assert user["createdAt"]
    assert "password" not in user and "password_hash" not in user
    assert db.validate_user("admin@example.com", "wrong") is None
    assert db.validate_user("nobody@example.com", "admin123") is None


def test_create_user_rejects_duplicate_email(db):
    created = db.create_user("Ann", "ann@example.com", "secret1")
    assert created["role"] == "user"
    assert db.validate_user("ann@example.com", "secret1")["id"] == created["id"]
    assert db.create_user("Other Ann", "ann@example.com", "secret2") is None


def test_create_product_is_listed_first(db):
    product = db.create_product(
        {"name": "Monitor", "description": "27 inch", "price": 249.5, "stock": 7, "category": "Electronics"}
    )
    assert product["createdAt"] and product["updatedAt"]
    assert product["image"] is None
    assert db.get_all_products()[0]["id"] == product["id"]
    assert db.get_product_by_id(product["id"]) == product


def test_update_product(db):
    updated = db.update_product(COFFEE_MAKER, {"price": 79.99, "id": 999, "createdAt": "x"})
    assert updated["id"] == COFFEE_MAKER
    assert updated["price"] == 79.99
    assert updated["name"] == "Coffee Maker"
    assert db.update_product(COFFEE_MAKER, {}) is None
    assert db.update_product(999, {"price": 1.0}) is None


def test_delete_product_drops_cart_lines(db):
    db.add_to_cart(JOHN, PHONE_CASE, 1)
    assert db.delete_product(PHONE_CASE) is True
    assert db.get_product_by_id(PHONE_CASE) is None
    assert db.get_cart_items(JOHN) == []
    assert db.delete_product(PHONE_CASE) is False


def test_delete_ordered_product_is_refused(db):
    db.add_to_cart(JOHN, COFFEE_MAKER, 1)
    db.checkout(JOHN)
    with pytest.raises(ProductInUseError):
        db.delete_product(COFFEE_MAKER)
    assert db.get_product_by_id(COFFEE_MAKER) is not None


def test_categories_are_distinct_and_sorted(db):
    assert db.get_unique_product_categories() == ["Accessories", "Appliances", "Electronics", "Office"]


def test_add_to_cart_merges_lines(db):
    first = db.add_to_cart(JOHN, COFFEE_MAKER, 1)
    second = db.add_to_cart(JOHN, COFFEE_MAKER, 2)
    assert second["id"] == first["id"]
    assert second["quantity"] == 3
    items = db.get_cart_items(JOHN)
    assert len(items) == 1
    assert items[0]["product"]["name"] == "Coffee Maker"
    assert db.get_cart_items(JANE) == []


def test_add_unknown_product_to_cart(db):
    assert db.add_to_cart(JOHN, 999, 1) is None


def test_cart_updates_are_scoped_to_owner(db):
    item = db.add_to_cart(JOHN, COFFEE_MAKER, 1)
    assert db.update_cart_item_quantity(JANE, item["id"], 5) is False
    assert db.remove_cart_item(JANE, item["id"]) is False
    assert db.update_cart_item_quantity(JOHN, item["id"], 5) is True
    assert db.get_cart_items(JOHN)[0]["quantity"] == 5
    assert db.update_cart_item_quantity(JOHN, item["id"], 0) is True
    assert db.get_cart_items(JOHN) == []


def test_clear_cart(db):
    db.add_to_cart(JOHN, COFFEE_MAKER, 1)
    db.add_to_cart(JOHN, PHONE_CASE, 1)
    db.add_to_cart(JANE, PHONE_CASE, 1)
    db.clear_cart(JOHN)
    assert db.get_cart_items(JOHN) == []
    assert len(db.get_cart_items(JANE)) == 1


def test_checkout_creates_order_and_decrements_stock(db):
    db.add_to_cart(JOHN, COFFEE_MAKER, 2)
    db.add_to_cart(JOHN, PHONE_CASE, 1)
    order = db.checkout(JOHN)
    assert order["user_id"] == JOHN
    assert order["status"] == "completed"
    assert order["total_amount"] == pytest.approx(2 * 89.99 + 19.99)
    assert [(i["product_id"], i["quantity"]) for i in order["items"]] == [(COFFEE_MAKER, 2), (PHONE_CASE, 1)]
    assert db.get_product_by_id(COFFEE_MAKER)["stock"] == 6
    assert db.get_product_by_id(PHONE_CASE)["stock"] == 2
    assert db.get_cart_items(JOHN) == []
    assert db.get_orders(JOHN) == [order]
    assert db.get_orders(JANE) == []


def test_checkout_empty_cart(db):
    with pytest.raises(EmptyCartError):
        db.checkout(JOHN)


def test_checkout_insufficient_stock_changes_nothing(db):
    db.add_to_cart(JOHN, COFFEE_MAKER, 1)
    db.add_to_cart(JOHN, PHONE_CASE, 4)
    with pytest.raises(InsufficientStockError) as excinfo:
        db.checkout(JOHN)
    assert excinfo.value.product_name == "Phone Case"
    assert excinfo.value.available == 3
    assert db.get_product_by_id(COFFEE_MAKER)["stock"] == 8
    assert len(db.get_cart_items(JOHN)) == 2
    assert db.get_orders(JOHN) == []


def test_dashboard_stats_on_seed_data(db):
    stats = db.get_dashboard_stats()
    assert stats["totalProducts"] == 8
    assert stats["lowStockItems"] == 3
    assert stats["totalRevenue"] == pytest.approx(23847.51)
    assert stats["totalOrders"] == 0


def test_dashboard_counts_orders(db):
    db.add_to_cart(JOHN, COFFEE_MAKER, 1)
    db.checkout(JOHN)
    assert db.get_dashboard_stats()["totalOrders"] == 1


def test_ping(db):
    assert db.ping() is True


def test_concurrent_adds_merge_into_one_line(db):
    def add():
        db.add_to_cart(JOHN, COFFEE_MAKER, 1)

    threads = [threading.Thread(target=add) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    items = db.get_cart_items(JOHN)
    assert len(items) == 1
    assert items[0]["quantity"] == 8


def test_sqlite_reads_run_beside_an_open_write(tmp_path):
    database = create_database(f"sqlite:///{tmp_path / 'locks.db'}")
    database.initialize()
    with database.session(write=True) as session:
        session.get(ProductModel, COFFEE_MAKER).stock = 1
        session.flush()
        # The writer holds the reserved lock; a deferred reader still sees committed data.
        assert database.get_product_by_id(COFFEE_MAKER)["stock"] == 8
        assert database.find_user_by_id(JOHN)["name"] == "John Doe"
    assert database.get_product_by_id(COFFEE_MAKER)["stock"] == 1
    database.close()


def test_postgres_pool_waits_for_connections():
    database = create_database("postgresql://shop@localhost/shop")
    pool = database.engine.pool
    assert isinstance(pool, QueuePool)
    assert pool.size() == DB_POOL_SIZE
    assert pool.timeout() == DB_POOL_TIMEOUT
