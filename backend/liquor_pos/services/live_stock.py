"""
Atomic primitives for Product.current_stock.

Each change is a single UPDATE so two requests touching the same product
cannot lose each other's work. Callers get back (old_value, new_value) for
the audit log.
"""
from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..models import Product
from ..time_utils import utcnow
from .errors import ConflictError, InsufficientStockError, NotFoundError

SET_STOCK_ATTEMPTS = 5


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
    return product


def _reload(product_id: int) -> Product:
    return (
        db.session.query(Product)
        .populate_existing()
        .filter(Product.id == product_id)
        .one()
    )


def change_live_stock(product_id: int, delta: int, *, allow_negative: bool = True) -> tuple[int, int]:
    """
    Add delta (may be negative) to live stock.

    With allow_negative=False the UPDATE only matches while the result stays
    at or above zero, so an oversell is rejected without a read-then-write gap.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(
            current_stock=Product.current_stock + delta,
            last_stock_update=utcnow(),
            version_id=Product.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if not allow_negative:
        stmt = stmt.where(Product.current_stock + delta >= 0)

    result = db.session.execute(stmt)
    if not result.rowcount:
        get_product(product_id)
        product = _reload(product_id)
        raise InsufficientStockError(
            f"Insufficient stock for {product.name}. Available: {product.current_stock}, "
            f"Required: {-delta}",
            product_id=product_id,
            available=product.current_stock,
            requested=-delta,
        )

    product = _reload(product_id)
    return product.current_stock - delta, product.current_stock


def set_live_stock(product_id: int, new_value: int) -> tuple[int, int]:
    """
    Overwrite live stock with new_value.

    Compare-and-set on the value just read, so the returned old value is the
    one actually replaced.
    """
    for _ in range(SET_STOCK_ATTEMPTS):
        old_value = (
            db.session.query(Product.current_stock)
            .filter(Product.id == product_id)
            .scalar()
        )
        if old_value is None:
            raise NotFoundError(f"Product {product_id} not found", product_id=product_id)

        result = db.session.execute(
            update(Product)
            .where(Product.id == product_id, Product.current_stock == old_value)
            .values(
                current_stock=new_value,
                last_stock_update=utcnow(),
                version_id=Product.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            _reload(product_id)
            return old_value, new_value

    raise ConflictError(f"Stock for product {product_id} kept changing; try again", product_id=product_id)
