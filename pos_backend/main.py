from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pos_backend import (
    accounts,
    audit,
    inventory,
    loyalty,
    notifications,
    purchasing,
    reports,
    returns,
    sales,
    system_settings,
)
from pos_backend.checkout import CartLine, build_receipt, compute_cart
from pos_backend.common import money, money_float, utcnow
from pos_backend.config import configure_logging, settings
from pos_backend.db import Base, SessionLocal, engine
from pos_backend.exceptions import ConflictError, NotFoundError, PosError, ValidationError
from pos_backend.models import (
    AuditLog,
    Category,
    Customer,
    CustomerTransaction,
    InventoryMovement,
    LoyaltyTransaction,
    Notification,
    PriceHistory,
    Product,
    Purchase,
    ReturnRefund,
    Sale,
    Supplier,
    SystemSetting,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    Base.metadata.create_all(bind=engine)
    logger.info("POS backend ready (env=%s)", settings.env)
    yield


configure_logging()
app = FastAPI(title="POS Backend", lifespan=lifespan)


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_user: Optional[str] = Header(default=None)) -> str:
    return x_user or "system"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@app.exception_handler(PosError)
def _pos_error(_req: Request, exc: PosError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(IntegrityError)
def _integrity_error(_req: Request, exc: IntegrityError):
    logger.warning("integrity error: %s", exc.orig)
    content = {"detail": "conflict"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc.orig)
    return JSONResponse(status_code=409, content=content)


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


# Categories and suppliers


class CategoryCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Beverages", "description": "Drinks and juices"}}}
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    is_active: Optional[bool] = None


def _category_data(category: Category) -> dict:
    return {
        "category_id": category.id,
        "name": category.name,
        "description": category.description,
        "is_active": category.is_active,
        "created_at": _iso(category.created_at),
        "updated_at": _iso(category.updated_at),
    }


def _ensure_unique_name(db: Session, model, name: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(model).filter(func.lower(model.name) == name.strip().lower())
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    if query.first():
        raise ConflictError(f"{model.__tablename__} named {name} already exists")


@app.post("/api/v1/categories", tags=["Categories"])
def create_category(
    payload: CategoryCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    _ensure_unique_name(db, Category, payload.name)
    category = Category(
        name=payload.name.strip(),
        description=payload.description,
        is_active=payload.is_active,
        created_at=utcnow(),
    )
    db.add(category)
    db.flush()
    audit.log_create(db, "Category", category.id, audit.snapshot(category), performed_by=actor)
    db.commit()
    db.refresh(category)
    return {"data": _category_data(category), "meta": _meta()}


@app.get("/api/v1/categories/{category_id}", tags=["Categories"])
def get_category(category_id: int, db: Session = Depends(get_db)) -> dict:
    category = db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="category not found")
    return {"data": _category_data(category), "meta": _meta()}


@app.get("/api/v1/categories", tags=["Categories"])
def list_categories(
    search: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Category)
    if search:
        query = query.filter(Category.name.ilike(f"%{search}%"))
    if is_active is not None:
        query = query.filter(Category.is_active == is_active)
    rows, next_cursor = _paginate_by_id(query, Category, limit, cursor)
    return {"data": [_category_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.patch("/api/v1/categories/{category_id}", tags=["Categories"])
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    category = db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="category not found")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name"):
        _ensure_unique_name(db, Category, changes["name"], exclude_id=category.id)
        changes["name"] = changes["name"].strip()
    previous = audit.snapshot(category, list(changes))
    for field, value in changes.items():
        setattr(category, field, value)
    category.updated_at = utcnow()
    audit.log_update(db, "Category", category.id, previous, audit.snapshot(category, list(changes)), performed_by=actor)
    db.commit()
    db.refresh(category)
    return {"data": _category_data(category), "meta": _meta()}


@app.post("/api/v1/categories/{category_id}/deactivate", tags=["Categories"])
def deactivate_category(
    category_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    category = db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="category not found")
    if not category.is_active:
        raise ConflictError("category is already inactive")
    category.is_active = False
    category.updated_at = utcnow()
    audit.log_update(db, "Category", category.id, {"is_active": True}, {"is_active": False}, performed_by=actor)
    db.commit()
    db.refresh(category)
    return {"data": _category_data(category), "meta": _meta()}


class SupplierCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Metro Distributors", "contact_info": "0917-555-0101", "address": "Pasig City"}
        }
    }
    name: str = Field(min_length=1, max_length=160)
    contact_info: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True


class SupplierUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=160)
    contact_info: Optional[str] = None
    address: Optional[str] = None
    is_active: Optional[bool] = None


def _supplier_data(supplier: Supplier) -> dict:
    return {
        "supplier_id": supplier.id,
        "name": supplier.name,
        "contact_info": supplier.contact_info,
        "address": supplier.address,
        "is_active": supplier.is_active,
        "created_at": _iso(supplier.created_at),
        "updated_at": _iso(supplier.updated_at),
    }


@app.post("/api/v1/suppliers", tags=["Suppliers"])
def create_supplier(
    payload: SupplierCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    _ensure_unique_name(db, Supplier, payload.name)
    supplier = Supplier(
        name=payload.name.strip(),
        contact_info=payload.contact_info,
        address=payload.address,
        is_active=payload.is_active,
        created_at=utcnow(),
    )
    db.add(supplier)
    db.flush()
    audit.log_create(db, "Supplier", supplier.id, audit.snapshot(supplier), performed_by=actor)
    db.commit()
    db.refresh(supplier)
    return {"data": _supplier_data(supplier), "meta": _meta()}


@app.get("/api/v1/suppliers/{supplier_id}", tags=["Suppliers"])
def get_supplier(supplier_id: int, db: Session = Depends(get_db)) -> dict:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="supplier not found")
    return {"data": _supplier_data(supplier), "meta": _meta()}


@app.get("/api/v1/suppliers", tags=["Suppliers"])
def list_suppliers(
    search: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Supplier)
    if search:
        query = query.filter(Supplier.name.ilike(f"%{search}%"))
    if is_active is not None:
        query = query.filter(Supplier.is_active == is_active)
    rows, next_cursor = _paginate_by_id(query, Supplier, limit, cursor)
    return {"data": [_supplier_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.patch("/api/v1/suppliers/{supplier_id}", tags=["Suppliers"])
def update_supplier(
    supplier_id: int,
    payload: SupplierUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="supplier not found")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name"):
        _ensure_unique_name(db, Supplier, changes["name"], exclude_id=supplier.id)
        changes["name"] = changes["name"].strip()
    previous = audit.snapshot(supplier, list(changes))
    for field, value in changes.items():
        setattr(supplier, field, value)
    supplier.updated_at = utcnow()
    audit.log_update(db, "Supplier", supplier.id, previous, audit.snapshot(supplier, list(changes)), performed_by=actor)
    db.commit()
    db.refresh(supplier)
    return {"data": _supplier_data(supplier), "meta": _meta()}


@app.post("/api/v1/suppliers/{supplier_id}/deactivate", tags=["Suppliers"])
def deactivate_supplier(
    supplier_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="supplier not found")
    if not supplier.is_active:
        raise ConflictError("supplier is already inactive")
    supplier.is_active = False
    supplier.updated_at = utcnow()
    audit.log_update(db, "Supplier", supplier.id, {"is_active": True}, {"is_active": False}, performed_by=actor)
    db.commit()
    db.refresh(supplier)
    return {"data": _supplier_data(supplier), "meta": _meta()}


# Products


class ProductCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "sku": "BEV-COLA-330",
                "barcode": "4800016644290",
                "name": "Cola 330ml",
                "price": "35.00",
                "cost_price": "22.50",
                "stock_qty": 48,
                "reorder_level": 12,
                "reorder_qty": 48,
                "category_id": 1,
                "supplier_id": 1,
            }
        }
    }
    sku: str = Field(min_length=1, max_length=64)
    barcode: Optional[str] = Field(default=None, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    stock_qty: int = Field(default=0, ge=0)
    reorder_level: int = Field(default=0, ge=0)
    reorder_qty: int = Field(default=0, ge=0)
    category_id: Optional[int] = None
    supplier_id: Optional[int] = None
    is_active: bool = True


class ProductUpdate(BaseModel):
    sku: Optional[str] = Field(default=None, min_length=1, max_length=64)
    barcode: Optional[str] = Field(default=None, max_length=64)
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    reorder_level: Optional[int] = Field(default=None, ge=0)
    reorder_qty: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    supplier_id: Optional[int] = None
    is_active: Optional[bool] = None
    price_change_reason: Optional[str] = None


class BulkPriceUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"product_ids": [1, 2, 3], "mode": "percentage", "value": "5", "reason": "supplier increase"}
        }
    }
    product_ids: list[int] = Field(min_length=1)
    mode: Literal["percentage", "fixed"]
    value: Decimal
    reason: Optional[str] = None


class StockAdjustment(BaseModel):
    model_config = {"json_schema_extra": {"example": {"quantity_change": -2, "notes": "damaged in storage"}}}
    quantity_change: int
    notes: Optional[str] = None


def _product_data(product: Product) -> dict:
    return {
        "product_id": product.id,
        "sku": product.sku,
        "barcode": product.barcode,
        "name": product.name,
        "description": product.description,
        "price": money_float(product.price),
        "cost_price": money_float(product.cost_price) if product.cost_price is not None else None,
        "stock_qty": product.stock_qty,
        "reorder_level": product.reorder_level,
        "reorder_qty": product.reorder_qty,
        "is_low_stock": product.stock_qty <= product.reorder_level,
        "category_id": product.category_id,
        "supplier_id": product.supplier_id,
        "is_active": product.is_active,
        "created_at": _iso(product.created_at),
        "updated_at": _iso(product.updated_at),
    }


def _price_history_data(row: PriceHistory) -> dict:
    return {
        "price_history_id": row.id,
        "product_id": row.product_id,
        "old_price": money_float(row.old_price),
        "new_price": money_float(row.new_price),
        "change_type": row.change_type,
        "reason": row.reason,
        "changed_by": row.changed_by,
        "changed_at": _iso(row.changed_at),
    }


def _movement_data(row: InventoryMovement) -> dict:
    return {
        "movement_id": row.id,
        "product_id": row.product_id,
        "sale_id": row.sale_id,
        "purchase_id": row.purchase_id,
        "return_refund_id": row.return_refund_id,
        "movement_type": row.movement_type,
        "qty_change": row.qty_change,
        "stock_before": row.stock_before,
        "stock_after": row.stock_after,
        "notes": row.notes,
        "performed_by": row.performed_by,
        "timestamp": _iso(row.timestamp),
    }


def _get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return product


def _check_references(db: Session, category_id: Optional[int], supplier_id: Optional[int]) -> None:
    if category_id is not None and not db.get(Category, category_id):
        raise NotFoundError("category not found")
    if supplier_id is not None and not db.get(Supplier, supplier_id):
        raise NotFoundError("supplier not found")


def _sku_taken(db: Session, sku: str, exclude_id: Optional[int] = None) -> bool:
    query = db.query(Product.id).filter(func.lower(Product.sku) == sku.strip().lower())
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    return query.first() is not None


def _record_price_change(
    db: Session, product: Product, new_price: Decimal, reason: Optional[str], actor: str
) -> Optional[PriceHistory]:
    old_price = money(product.price)
    new_price = money(new_price)
    if new_price == old_price:
        return None
    history = PriceHistory(
        product_id=product.id,
        old_price=old_price,
        new_price=new_price,
        change_type="increase" if new_price > old_price else "decrease",
        reason=reason,
        changed_by=actor,
        changed_at=utcnow(),
    )
    db.add(history)
    product.price = new_price
    audit.log_update(
        db, "Product", product.id, {"price": old_price}, {"price": new_price},
        performed_by=actor, description=reason or "price change",
    )
    return history


@app.post("/api/v1/products", tags=["Products"])
def create_product(
    payload: ProductCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    if _sku_taken(db, payload.sku):
        raise ConflictError(f"SKU {payload.sku} already exists")
    if payload.barcode and db.query(Product.id).filter(Product.barcode == payload.barcode).first():
        raise ConflictError(f"barcode {payload.barcode} already exists")
    _check_references(db, payload.category_id, payload.supplier_id)
    product = Product(
        sku=payload.sku.strip(),
        barcode=payload.barcode or None,
        name=payload.name,
        description=payload.description,
        price=money(payload.price),
        cost_price=money(payload.cost_price) if payload.cost_price is not None else None,
        stock_qty=0,
        reorder_level=payload.reorder_level,
        reorder_qty=payload.reorder_qty,
        category_id=payload.category_id,
        supplier_id=payload.supplier_id,
        is_active=payload.is_active,
        created_at=utcnow(),
    )
    db.add(product)
    db.flush()
    audit.log_create(db, "Product", product.id, audit.snapshot(product), performed_by=actor)
    if payload.stock_qty > 0:
        inventory.apply_stock_change(
            db, product, payload.stock_qty, "adjustment", notes="opening stock", performed_by=actor
        )
    db.commit()
    db.refresh(product)
    return {"data": _product_data(product), "meta": _meta()}


@app.get("/api/v1/products", tags=["Products"])
def list_products(
    search: Optional[str] = Query(default=None),
    category_id: Optional[int] = Query(default=None),
    supplier_id: Optional[int] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    low_stock: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Product)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(Product.name.ilike(pattern), Product.sku.ilike(pattern), Product.barcode.ilike(pattern))
        )
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    if supplier_id is not None:
        query = query.filter(Product.supplier_id == supplier_id)
    if is_active is not None:
        query = query.filter(Product.is_active == is_active)
    if low_stock:
        query = query.filter(Product.stock_qty <= Product.reorder_level)
    rows, next_cursor = _paginate_by_id(query, Product, limit, cursor)
    return {"data": [_product_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/products/low-stock", tags=["Products"])
def list_low_stock_products(db: Session = Depends(get_db)) -> dict:
    rows = (
        db.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_qty <= Product.reorder_level)
        .order_by(Product.stock_qty, Product.id)
        .all()
    )
    return {"data": [_product_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/products/sku-availability", tags=["Products"])
def check_sku_availability(
    sku: str = Query(min_length=1),
    exclude_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": {"sku": sku, "available": not _sku_taken(db, sku, exclude_id)}, "meta": _meta()}


@app.get("/api/v1/products/barcode/{barcode}", tags=["Products"])
def get_product_by_barcode(barcode: str, db: Session = Depends(get_db)) -> dict:
    product = db.query(Product).filter(Product.barcode == barcode).first()
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return {"data": _product_data(product), "meta": _meta()}


@app.post("/api/v1/products/bulk-price-update", tags=["Products"])
def bulk_update_prices(
    payload: BulkPriceUpdate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    products = db.query(Product).filter(Product.id.in_(payload.product_ids)).all()
    missing = set(payload.product_ids) - {product.id for product in products}
    if missing:
        raise NotFoundError(f"products not found: {sorted(missing)}")
    updated = []
    for product in products:
        if payload.mode == "percentage":
            new_price = money(product.price * (Decimal("100") + payload.value) / Decimal("100"))
        else:
            new_price = money(product.price + payload.value)
        if new_price < 0:
            raise ValidationError(f"price for {product.sku} would become negative")
        history = _record_price_change(db, product, new_price, payload.reason or "bulk price update", actor)
        if history is not None:
            product.updated_at = utcnow()
            updated.append(product)
    db.commit()
    return {
        "data": {
            "updated": len(updated),
            "products": [_product_data(product) for product in updated],
        },
        "meta": _meta(),
    }


@app.get("/api/v1/products/{product_id}", tags=["Products"])
def get_product(product_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _product_data(_get_product(db, product_id)), "meta": _meta()}


@app.get("/api/v1/products/{product_id}/availability", tags=["Products"])
def check_product_availability(
    product_id: int,
    quantity: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
) -> dict:
    product = _get_product(db, product_id)
    return {
        "data": {
            "product_id": product.id,
            "requested": quantity,
            "stock_qty": product.stock_qty,
            "is_active": product.is_active,
            "available": product.is_active and product.stock_qty >= quantity,
        },
        "meta": _meta(),
    }


@app.patch("/api/v1/products/{product_id}", tags=["Products"])
def update_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    product = _get_product(db, product_id)
    changes = payload.model_dump(exclude_unset=True)
    reason = changes.pop("price_change_reason", None)
    new_price = changes.pop("price", None)
    if "sku" in changes:
        changes["sku"] = (changes["sku"] or "").strip()
        if not changes["sku"]:
            raise ValidationError("sku cannot be blank")
        if _sku_taken(db, changes["sku"], exclude_id=product.id):
            raise ConflictError(f"SKU {changes['sku']} already exists")
    if changes.get("barcode"):
        clash = db.query(Product.id).filter(Product.barcode == changes["barcode"], Product.id != product.id).first()
        if clash:
            raise ConflictError(f"barcode {changes['barcode']} already exists")
    _check_references(db, changes.get("category_id"), changes.get("supplier_id"))
    if "cost_price" in changes and changes["cost_price"] is not None:
        changes["cost_price"] = money(changes["cost_price"])

    previous = audit.snapshot(product, list(changes))
    for field, value in changes.items():
        setattr(product, field, value)
    if changes:
        audit.log_update(db, "Product", product.id, previous, audit.snapshot(product, list(changes)), performed_by=actor)
    if new_price is not None:
        _record_price_change(db, product, new_price, reason, actor)
    product.updated_at = utcnow()
    db.commit()
    db.refresh(product)
    return {"data": _product_data(product), "meta": _meta()}


@app.post("/api/v1/products/{product_id}/deactivate", tags=["Products"])
def deactivate_product(
    product_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    product = _get_product(db, product_id)
    if not product.is_active:
        raise ConflictError("product is already inactive")
    product.is_active = False
    product.updated_at = utcnow()
    audit.log_update(db, "Product", product.id, {"is_active": True}, {"is_active": False}, performed_by=actor)
    db.commit()
    db.refresh(product)
    return {"data": _product_data(product), "meta": _meta()}


@app.post("/api/v1/products/{product_id}/stock-adjustments", tags=["Products"])
def adjust_product_stock(
    product_id: int,
    payload: StockAdjustment,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    product = _get_product(db, product_id)
    movement = inventory.apply_stock_change(
        db, product, payload.quantity_change, "adjustment", notes=payload.notes, performed_by=actor
    )
    db.commit()
    db.refresh(product)
    db.refresh(movement)
    return {"data": {"product": _product_data(product), "movement": _movement_data(movement)}, "meta": _meta()}


@app.get("/api/v1/products/{product_id}/price-history", tags=["Products"])
def list_price_history(product_id: int, db: Session = Depends(get_db)) -> dict:
    _get_product(db, product_id)
    rows = (
        db.query(PriceHistory)
        .filter(PriceHistory.product_id == product_id)
        .order_by(PriceHistory.changed_at.desc(), PriceHistory.id.desc())
        .all()
    )
    return {"data": [_price_history_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/products/{product_id}/stock-history", tags=["Products"])
def get_stock_history(
    product_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = inventory.stock_history(db, product_id, limit)
    return {"data": [_movement_data(row) for row in rows], "meta": _meta()}


# Inventory movements


@app.get("/api/v1/inventory-movements", tags=["Inventory"])
def list_inventory_movements(
    product_id: Optional[int] = Query(default=None),
    sale_id: Optional[int] = Query(default=None),
    movement_type: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = inventory.movement_query(db, product_id, sale_id, movement_type, date_from, date_to)
    rows, next_cursor = _paginate_by_id(query, InventoryMovement, limit, cursor)
    return {"data": [_movement_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/inventory-movements/stats", tags=["Inventory"])
def get_inventory_stats(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": inventory.movement_stats(db, date_from, date_to), "meta": _meta()}


@app.get("/api/v1/inventory-movements/{movement_id}", tags=["Inventory"])
def get_inventory_movement(movement_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _movement_data(inventory.get_movement(db, movement_id)), "meta": _meta()}


# Customers


class CustomerCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Maria Santos", "email": "maria@example.com", "phone": "0917-555-0199"}
        }
    }
    name: str = Field(min_length=1, max_length=160)
    email: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)
    address: Optional[str] = None


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=160)
    email: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=40)
    address: Optional[str] = None


def _customer_data(customer: Customer) -> dict:
    return {
        "customer_id": customer.id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "address": customer.address,
        "loyalty_points_balance": customer.loyalty_points_balance,
        "lifetime_points_earned": customer.lifetime_points_earned,
        "current_balance": money_float(customer.current_balance),
        "status": customer.status,
        "is_active": customer.is_active,
        "created_at": _iso(customer.created_at),
        "updated_at": _iso(customer.updated_at),
    }


def _get_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="customer not found")
    return customer


def _ensure_unique_email(db: Session, email: Optional[str], exclude_id: Optional[int] = None) -> None:
    if not email:
        return
    query = db.query(Customer.id).filter(func.lower(Customer.email) == email.strip().lower())
    if exclude_id is not None:
        query = query.filter(Customer.id != exclude_id)
    if query.first():
        raise ConflictError(f"customer with email {email} already exists")


@app.post("/api/v1/customers", tags=["Customers"])
def create_customer(
    payload: CustomerCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    _ensure_unique_email(db, payload.email)
    customer = Customer(
        name=payload.name,
        email=payload.email.strip().lower() if payload.email else None,
        phone=payload.phone,
        address=payload.address,
        loyalty_points_balance=0,
        lifetime_points_earned=0,
        current_balance=money(0),
        status="regular",
        is_active=True,
        created_at=utcnow(),
    )
    db.add(customer)
    db.flush()
    audit.log_create(db, "Customer", customer.id, audit.snapshot(customer), performed_by=actor)
    db.commit()
    db.refresh(customer)
    return {"data": _customer_data(customer), "meta": _meta()}


@app.get("/api/v1/customers", tags=["Customers"])
def list_customers(
    search: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Customer)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(Customer.name.ilike(pattern), Customer.email.ilike(pattern), Customer.phone.ilike(pattern))
        )
    if status is not None:
        query = query.filter(Customer.status == status)
    if is_active is not None:
        query = query.filter(Customer.is_active == is_active)
    rows, next_cursor = _paginate_by_id(query, Customer, limit, cursor)
    return {"data": [_customer_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/customers/{customer_id}", tags=["Customers"])
def get_customer(customer_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _customer_data(_get_customer(db, customer_id)), "meta": _meta()}


@app.patch("/api/v1/customers/{customer_id}", tags=["Customers"])
def update_customer(
    customer_id: int,
    payload: CustomerUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    customer = _get_customer(db, customer_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("email"):
        _ensure_unique_email(db, changes["email"], exclude_id=customer.id)
        changes["email"] = changes["email"].strip().lower()
    previous = audit.snapshot(customer, list(changes))
    for field, value in changes.items():
        setattr(customer, field, value)
    customer.updated_at = utcnow()
    audit.log_update(db, "Customer", customer.id, previous, audit.snapshot(customer, list(changes)), performed_by=actor)
    db.commit()
    db.refresh(customer)
    return {"data": _customer_data(customer), "meta": _meta()}


def _set_customer_active(db: Session, customer_id: int, active: bool, actor: str) -> dict:
    customer = _get_customer(db, customer_id)
    if customer.is_active == active:
        raise ConflictError(f"customer is already {'active' if active else 'inactive'}")
    customer.is_active = active
    customer.updated_at = utcnow()
    audit.log_update(db, "Customer", customer.id, {"is_active": not active}, {"is_active": active}, performed_by=actor)
    db.commit()
    db.refresh(customer)
    return {"data": _customer_data(customer), "meta": _meta()}


@app.post("/api/v1/customers/{customer_id}/deactivate", tags=["Customers"])
def deactivate_customer(
    customer_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    return _set_customer_active(db, customer_id, False, actor)


@app.post("/api/v1/customers/{customer_id}/activate", tags=["Customers"])
def activate_customer(
    customer_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    return _set_customer_active(db, customer_id, True, actor)


@app.get("/api/v1/customers/{customer_id}/purchases", tags=["Customers"])
def get_customer_purchase_history(
    customer_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    _get_customer(db, customer_id)
    rows = (
        db.query(Sale)
        .filter(Sale.customer_id == customer_id, Sale.status.in_(["paid", "refunded"]))
        .order_by(Sale.created_at.desc(), Sale.id.desc())
        .limit(limit)
        .all()
    )
    return {"data": [_sale_data(row, with_items=True) for row in rows], "meta": _meta()}


@app.get("/api/v1/customers/{customer_id}/stats", tags=["Customers"])
def get_customer_stats(customer_id: int, db: Session = Depends(get_db)) -> dict:
    customer = _get_customer(db, customer_id)
    count, total, last_purchase = (
        db.query(func.count(Sale.id), func.coalesce(func.sum(Sale.total_amount), 0), func.max(Sale.created_at))
        .filter(Sale.customer_id == customer.id, Sale.status == "paid")
        .one()
    )
    refunded = (
        db.query(func.count(Sale.id))
        .filter(Sale.customer_id == customer.id, Sale.status == "refunded")
        .scalar()
    )
    total = money(total)
    return {
        "data": {
            "customer_id": customer.id,
            "sales": count,
            "refunded_sales": refunded,
            "total_spent": float(total),
            "average_sale": float(money(total / count)) if count else 0.0,
            "last_purchase_at": _iso(last_purchase),
            "loyalty_points_balance": customer.loyalty_points_balance,
            "lifetime_points_earned": customer.lifetime_points_earned,
            "status": customer.status,
        },
        "meta": _meta(),
    }


class AccountTransactionCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"transaction_type": "payment", "amount": "500.00", "description": "cash at counter"}
        }
    }
    transaction_type: Literal["payment", "credit_note", "debit_note", "adjustment"]
    amount: Decimal
    description: Optional[str] = None


def _customer_transaction_data(row: CustomerTransaction) -> dict:
    return {
        "customer_transaction_id": row.id,
        "customer_id": row.customer_id,
        "sale_id": row.sale_id,
        "transaction_type": row.transaction_type,
        "amount": money_float(row.amount),
        "balance_before": money_float(row.balance_before),
        "balance_after": money_float(row.balance_after),
        "description": row.description,
        "performed_by": row.performed_by,
        "transaction_date": _iso(row.transaction_date),
    }


@app.get("/api/v1/customers/{customer_id}/account", tags=["Customer accounts"])
def get_customer_account(customer_id: int, db: Session = Depends(get_db)) -> dict:
    customer = _get_customer(db, customer_id)
    return {"data": accounts.account_summary(db, customer), "meta": _meta()}


@app.get("/api/v1/customers/{customer_id}/account/transactions", tags=["Customer accounts"])
def list_customer_account_transactions(
    customer_id: int,
    transaction_type: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    _get_customer(db, customer_id)
    query = accounts.transaction_query(db, customer_id, transaction_type, date_from, date_to)
    rows, next_cursor = _paginate_by_id(query, CustomerTransaction, limit, cursor)
    return {
        "data": [_customer_transaction_data(row) for row in rows],
        "meta": _list_meta(limit, cursor, next_cursor),
    }


@app.post("/api/v1/customers/{customer_id}/account/transactions", tags=["Customer accounts"])
def post_customer_account_transaction(
    customer_id: int,
    payload: AccountTransactionCreate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    customer = _get_customer(db, customer_id)
    transaction = accounts.post_transaction(
        db,
        customer,
        payload.transaction_type,
        payload.amount,
        description=payload.description,
        performed_by=actor,
    )
    db.commit()
    db.refresh(transaction)
    db.refresh(customer)
    return {
        "data": {"transaction": _customer_transaction_data(transaction), "customer": _customer_data(customer)},
        "meta": _meta(),
    }


@app.get("/api/v1/customers/{customer_id}/account/statement", tags=["Customer accounts"])
def get_customer_statement(
    customer_id: int,
    start: datetime = Query(),
    end: datetime = Query(),
    db: Session = Depends(get_db),
) -> dict:
    customer = _get_customer(db, customer_id)
    return {"data": accounts.statement(db, customer, start, end), "meta": _meta()}


# Checkout and sales


class CartItemInput(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    tax_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)


class CheckoutQuote(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "items": [{"product_id": 1, "quantity": 2, "discount_percent": "10"}],
                "discount_percent": "0",
                "tax_percent": "0",
                "customer_id": 1,
                "loyalty_points": 20,
            }
        }
    }
    items: list[CartItemInput] = Field(min_length=1)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    tax_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    customer_id: Optional[int] = None
    loyalty_points: int = Field(default=0, ge=0)


class SaleCreate(CheckoutQuote):
    model_config = {
        "json_schema_extra": {
            "example": {
                "items": [{"product_id": 1, "quantity": 2}],
                "customer_id": 1,
                "payment_method": "cash",
                "loyalty_points": 0,
                "notes": "walk-in",
            }
        }
    }
    payment_method: str = "cash"
    notes: Optional[str] = None


class SaleUpdate(BaseModel):
    notes: Optional[str] = None
    payment_method: Optional[str] = None


class SalePayment(BaseModel):
    model_config = {"json_schema_extra": {"example": {"payment_method": "cash", "amount_tendered": "500.00"}}}
    payment_method: Optional[str] = None
    amount_tendered: Optional[Decimal] = Field(default=None, ge=0)


class SaleReason(BaseModel):
    reason: Optional[str] = None


def _sale_data(sale: Sale, with_items: bool = False) -> dict:
    data = {
        "sale_id": sale.id,
        "reference_no": sale.reference_no,
        "status": sale.status,
        "payment_method": sale.payment_method,
        "customer_id": sale.customer_id,
        "subtotal": money_float(sale.subtotal),
        "discount_amount": money_float(sale.discount_amount),
        "tax_amount": money_float(sale.tax_amount),
        "total_amount": money_float(sale.total_amount),
        "used_loyalty": sale.used_loyalty,
        "loyalty_redeemed": sale.loyalty_redeemed,
        "points_earned": sale.points_earned,
        "amount_paid": money_float(sale.amount_paid) if sale.amount_paid is not None else None,
        "change_due": money_float(sale.change_due) if sale.change_due is not None else None,
        "notes": sale.notes,
        "performed_by": sale.performed_by,
        "created_at": _iso(sale.created_at),
        "updated_at": _iso(sale.updated_at),
        "paid_at": _iso(sale.paid_at),
    }
    if with_items:
        data["items"] = [
            {
                "sale_item_id": item.id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": money_float(item.unit_price),
                "discount": money_float(item.discount),
                "tax": money_float(item.tax),
                "line_total": money_float(item.line_total),
            }
            for item in sale.items
        ]
    return data


@app.post("/api/v1/checkout/quote", tags=["Checkout"])
def quote_checkout(payload: CheckoutQuote, db: Session = Depends(get_db)) -> dict:
    points_available = 0
    if payload.customer_id is not None:
        points_available = _get_customer(db, payload.customer_id).loyalty_points_balance
    store_tax = system_settings.tax_rate(db)
    lines = []
    warnings = []
    for item in payload.items:
        product = _get_product(db, item.product_id)
        if not product.is_active:
            warnings.append(f"product {product.sku} is inactive")
        elif product.stock_qty < item.quantity:
            warnings.append(f"only {product.stock_qty} of {product.sku} in stock")
        lines.append(
            CartLine(
                product_id=product.id,
                unit_price=product.price,
                quantity=item.quantity,
                discount_percent=item.discount_percent,
                tax_percent=store_tax if item.tax_percent is None else item.tax_percent,
            )
        )
    totals = compute_cart(
        lines,
        discount_percent=payload.discount_percent,
        tax_percent=payload.tax_percent,
        points_available=points_available,
        points_to_redeem=payload.loyalty_points,
    )
    return {
        "data": {
            "lines": [
                {
                    "product_id": line.product_id,
                    "quantity": line.quantity,
                    "unit_price": float(line.unit_price),
                    "gross": float(line.gross),
                    "discount": float(line.discount),
                    "tax": float(line.tax),
                    "line_total": float(line.line_total),
                }
                for line in totals.lines
            ],
            "subtotal": float(totals.subtotal),
            "global_discount": float(totals.global_discount),
            "global_tax": float(totals.global_tax),
            "total_before_loyalty": float(totals.total_before_loyalty),
            "max_redeemable_points": totals.max_redeemable,
            "loyalty_deduction": float(totals.loyalty_deduction),
            "grand_total": float(totals.grand_total),
        },
        "meta": _meta(warnings=warnings),
    }


@app.post("/api/v1/sales", tags=["Sales"])
def create_sale(payload: SaleCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    sale = sales.create_sale(
        db,
        [item.model_dump() for item in payload.items],
        customer_id=payload.customer_id,
        payment_method=payload.payment_method,
        discount_percent=payload.discount_percent,
        tax_percent=payload.tax_percent,
        loyalty_points=payload.loyalty_points,
        notes=payload.notes,
        performed_by=actor,
    )
    db.commit()
    db.refresh(sale)
    return {"data": _sale_data(sale, with_items=True), "meta": _meta()}


@app.get("/api/v1/sales", tags=["Sales"])
def list_sales(
    status: Optional[str] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    payment_method: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = sales.sale_query(db, status, customer_id, payment_method, date_from, date_to, search)
    rows, next_cursor = _paginate_by_id(query, Sale, limit, cursor)
    return {"data": [_sale_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/sales/{sale_id}", tags=["Sales"])
def get_sale(sale_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _sale_data(sales.get_sale(db, sale_id), with_items=True), "meta": _meta()}


@app.patch("/api/v1/sales/{sale_id}", tags=["Sales"])
def update_sale(
    sale_id: int, payload: SaleUpdate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    sale = sales.update_sale(db, sale_id, notes=payload.notes, payment_method=payload.payment_method, performed_by=actor)
    db.commit()
    db.refresh(sale)
    return {"data": _sale_data(sale, with_items=True), "meta": _meta()}


@app.delete("/api/v1/sales/{sale_id}", tags=["Sales"])
def delete_sale(sale_id: int, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    sales.delete_sale(db, sale_id, performed_by=actor)
    db.commit()
    return {"data": {"sale_id": sale_id, "deleted": True}, "meta": _meta()}


@app.post("/api/v1/sales/{sale_id}/pay", tags=["Sales"])
def pay_sale(
    sale_id: int, payload: SalePayment, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    sale = sales.pay_sale(
        db, sale_id, payment_method=payload.payment_method, amount_tendered=payload.amount_tendered, performed_by=actor
    )
    db.commit()
    db.refresh(sale)
    return {"data": _sale_data(sale, with_items=True), "meta": _meta()}


@app.post("/api/v1/sales/{sale_id}/refund", tags=["Sales"])
def refund_sale(
    sale_id: int, payload: SaleReason, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    sale = sales.refund_sale(db, sale_id, reason=payload.reason, performed_by=actor)
    db.commit()
    db.refresh(sale)
    return {"data": _sale_data(sale, with_items=True), "meta": _meta()}


@app.post("/api/v1/sales/{sale_id}/void", tags=["Sales"])
def void_sale(
    sale_id: int, payload: SaleReason, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    sale = sales.void_sale(db, sale_id, reason=payload.reason, performed_by=actor)
    db.commit()
    db.refresh(sale)
    return {"data": _sale_data(sale, with_items=True), "meta": _meta()}


@app.get("/api/v1/sales/{sale_id}/receipt", tags=["Sales"])
def get_sale_receipt(sale_id: int, db: Session = Depends(get_db)) -> dict:
    sale = sales.get_sale(db, sale_id)
    return {"data": build_receipt(sale, system_settings.company_name(db)), "meta": _meta()}


# Loyalty


class LoyaltyAdjustment(BaseModel):
    model_config = {"json_schema_extra": {"example": {"points": 100, "transaction_type": "bonus", "notes": "birthday"}}}
    points: int = Field(ge=0)
    transaction_type: Literal["earn", "bonus", "redeem", "adjustment"]
    notes: Optional[str] = None


def _loyalty_data(row: LoyaltyTransaction) -> dict:
    return {
        "loyalty_transaction_id": row.id,
        "customer_id": row.customer_id,
        "sale_id": row.sale_id,
        "transaction_type": row.transaction_type,
        "points_change": row.points_change,
        "balance_before": row.balance_before,
        "balance_after": row.balance_after,
        "notes": row.notes,
        "performed_by": row.performed_by,
        "timestamp": _iso(row.timestamp),
    }


@app.post("/api/v1/customers/{customer_id}/loyalty-adjustments", tags=["Loyalty"])
def adjust_loyalty_points(
    customer_id: int,
    payload: LoyaltyAdjustment,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    transaction = loyalty.adjust_points(
        db, customer_id, payload.points, payload.transaction_type, notes=payload.notes, performed_by=actor
    )
    db.commit()
    db.refresh(transaction)
    customer = db.get(Customer, customer_id)
    return {
        "data": {"transaction": _loyalty_data(transaction), "customer": _customer_data(customer)},
        "meta": _meta(),
    }


@app.get("/api/v1/loyalty/transactions", tags=["Loyalty"])
def list_loyalty_transactions(
    customer_id: Optional[int] = Query(default=None),
    transaction_type: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = loyalty.transaction_query(db, customer_id, transaction_type, date_from, date_to)
    rows, next_cursor = _paginate_by_id(query, LoyaltyTransaction, limit, cursor)
    return {"data": [_loyalty_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/loyalty/stats", tags=["Loyalty"])
def get_loyalty_stats(db: Session = Depends(get_db)) -> dict:
    return {"data": loyalty.loyalty_stats(db), "meta": _meta()}


@app.get("/api/v1/loyalty/tiers", tags=["Loyalty"])
def get_loyalty_tiers(db: Session = Depends(get_db)) -> dict:
    return {"data": loyalty.tier_overview(db), "meta": _meta()}


@app.get("/api/v1/loyalty/leaderboard", tags=["Loyalty"])
def get_loyalty_leaderboard(limit: int = Query(default=10, ge=1, le=100), db: Session = Depends(get_db)) -> dict:
    return {"data": [_customer_data(row) for row in loyalty.leaderboard(db, limit)], "meta": _meta()}


# Purchases


class PurchaseItemInput(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    unit_cost: Decimal = Field(ge=0)


class PurchaseCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "supplier_id": 1,
                "items": [{"product_id": 1, "quantity": 48, "unit_cost": "22.50"}],
                "notes": "weekly restock",
            }
        }
    }
    supplier_id: int
    items: list[PurchaseItemInput] = Field(min_length=1)
    notes: Optional[str] = None
    order_date: Optional[datetime] = None


class PurchaseUpdate(BaseModel):
    items: Optional[list[PurchaseItemInput]] = Field(default=None, min_length=1)
    notes: Optional[str] = None


class StatusChange(BaseModel):
    model_config = {"json_schema_extra": {"example": {"status": "completed"}}}
    status: str


def _purchase_data(purchase: Purchase) -> dict:
    return {
        "purchase_id": purchase.id,
        "reference_no": purchase.reference_no,
        "supplier_id": purchase.supplier_id,
        "status": purchase.status,
        "order_date": _iso(purchase.order_date),
        "received_at": _iso(purchase.received_at),
        "total_amount": money_float(purchase.total_amount),
        "notes": purchase.notes,
        "performed_by": purchase.performed_by,
        "items": [
            {
                "purchase_item_id": item.id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_cost": money_float(item.unit_cost),
                "subtotal": money_float(item.subtotal),
            }
            for item in purchase.items
        ],
    }


@app.post("/api/v1/purchases", tags=["Purchases"])
def create_purchase(
    payload: PurchaseCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    purchase = purchasing.create_purchase(
        db,
        payload.supplier_id,
        [item.model_dump() for item in payload.items],
        notes=payload.notes,
        performed_by=actor,
        order_date=payload.order_date,
    )
    db.commit()
    db.refresh(purchase)
    return {"data": _purchase_data(purchase), "meta": _meta()}


@app.get("/api/v1/purchases", tags=["Purchases"])
def list_purchases(
    status: Optional[str] = Query(default=None),
    supplier_id: Optional[int] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = purchasing.purchase_query(db, status, supplier_id, date_from, date_to)
    rows, next_cursor = _paginate_by_id(query, Purchase, limit, cursor)
    return {"data": [_purchase_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/purchases/{purchase_id}", tags=["Purchases"])
def get_purchase(purchase_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _purchase_data(purchasing.get_purchase(db, purchase_id)), "meta": _meta()}


@app.patch("/api/v1/purchases/{purchase_id}", tags=["Purchases"])
def update_purchase(
    purchase_id: int,
    payload: PurchaseUpdate,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    items = [item.model_dump() for item in payload.items] if payload.items is not None else None
    purchase = purchasing.update_purchase(db, purchase_id, items=items, notes=payload.notes, performed_by=actor)
    db.commit()
    db.refresh(purchase)
    return {"data": _purchase_data(purchase), "meta": _meta()}


@app.post("/api/v1/purchases/{purchase_id}/status", tags=["Purchases"])
def change_purchase_status(
    purchase_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    purchase = purchasing.set_purchase_status(db, purchase_id, payload.status, performed_by=actor)
    db.commit()
    db.refresh(purchase)
    return {"data": _purchase_data(purchase), "meta": _meta()}


# Returns


class ReturnItemInput(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    reason: Optional[str] = None


class ReturnCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "sale_id": 1,
                "items": [{"product_id": 1, "quantity": 1, "reason": "dented can"}],
                "reason": "damaged",
                "refund_method": "cash",
            }
        }
    }
    sale_id: int
    items: list[ReturnItemInput] = Field(min_length=1)
    reason: Optional[str] = None
    refund_method: str = "cash"
    customer_id: Optional[int] = None


def _return_data(row: ReturnRefund) -> dict:
    return {
        "return_id": row.id,
        "reference_no": row.reference_no,
        "sale_id": row.sale_id,
        "customer_id": row.customer_id,
        "reason": row.reason,
        "refund_method": row.refund_method,
        "status": row.status,
        "total_amount": money_float(row.total_amount),
        "performed_by": row.performed_by,
        "created_at": _iso(row.created_at),
        "processed_at": _iso(row.processed_at),
        "items": [
            {
                "return_item_id": item.id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": money_float(item.unit_price),
                "subtotal": money_float(item.subtotal),
                "reason": item.reason,
            }
            for item in row.items
        ],
    }


@app.post("/api/v1/returns", tags=["Returns"])
def create_return(payload: ReturnCreate, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    row = returns.create_return(
        db,
        payload.sale_id,
        [item.model_dump() for item in payload.items],
        reason=payload.reason,
        refund_method=payload.refund_method,
        customer_id=payload.customer_id,
        performed_by=actor,
    )
    db.commit()
    db.refresh(row)
    return {"data": _return_data(row), "meta": _meta()}


@app.get("/api/v1/returns", tags=["Returns"])
def list_returns(
    status: Optional[str] = Query(default=None),
    sale_id: Optional[int] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = returns.return_query(db, status, sale_id, customer_id, date_from, date_to)
    rows, next_cursor = _paginate_by_id(query, ReturnRefund, limit, cursor)
    return {"data": [_return_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/returns/stats", tags=["Returns"])
def get_return_stats(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": returns.return_stats(db, date_from, date_to), "meta": _meta()}


@app.get("/api/v1/returns/{return_id}", tags=["Returns"])
def get_return(return_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _return_data(returns.get_return(db, return_id)), "meta": _meta()}


@app.post("/api/v1/returns/{return_id}/status", tags=["Returns"])
def change_return_status(
    return_id: int,
    payload: StatusChange,
    db: Session = Depends(get_db),
    actor: str = Depends(get_actor),
) -> dict:
    row = returns.set_return_status(db, return_id, payload.status, performed_by=actor)
    db.commit()
    db.refresh(row)
    return {"data": _return_data(row), "meta": _meta()}


# Notifications


class NotificationCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"title": "Stock count", "message": "Cycle count due Friday", "type": "info"}
        }
    }
    title: str = Field(min_length=1, max_length=200)
    message: str
    type: str = "info"
    metadata: Optional[dict] = None


def _notification_data(row: Notification) -> dict:
    return {
        "notification_id": row.id,
        "title": row.title,
        "message": row.message,
        "type": row.type,
        "is_read": row.is_read,
        "metadata": row.metadata_json,
        "created_at": _iso(row.created_at),
        "read_at": _iso(row.read_at),
    }


@app.post("/api/v1/notifications", tags=["Notifications"])
def create_notification(payload: NotificationCreate, db: Session = Depends(get_db)) -> dict:
    row = notifications.create_notification(db, payload.title, payload.message, payload.type, payload.metadata)
    db.commit()
    db.refresh(row)
    return {"data": _notification_data(row), "meta": _meta()}


@app.get("/api/v1/notifications", tags=["Notifications"])
def list_notifications(
    type: Optional[str] = Query(default=None),
    is_read: Optional[bool] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = (
        notifications.list_query(db, type, is_read)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .all()
    )
    return {"data": [_notification_data(row) for row in rows], "meta": _meta()}


@app.get("/api/v1/notifications/unread-count", tags=["Notifications"])
def get_unread_count(db: Session = Depends(get_db)) -> dict:
    return {"data": {"unread": notifications.unread_count(db)}, "meta": _meta()}


@app.get("/api/v1/notifications/stats", tags=["Notifications"])
def get_notification_stats(db: Session = Depends(get_db)) -> dict:
    return {"data": notifications.notification_stats(db), "meta": _meta()}


@app.post("/api/v1/notifications/read-all", tags=["Notifications"])
def mark_all_notifications_read(db: Session = Depends(get_db)) -> dict:
    updated = notifications.mark_all_read(db)
    db.commit()
    return {"data": {"updated": updated}, "meta": _meta()}


@app.get("/api/v1/notifications/{notification_id}", tags=["Notifications"])
def get_notification(notification_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": _notification_data(notifications.get_notification(db, notification_id)), "meta": _meta()}


@app.post("/api/v1/notifications/{notification_id}/read", tags=["Notifications"])
def mark_notification_read(notification_id: int, db: Session = Depends(get_db)) -> dict:
    row = notifications.mark_read(db, notification_id)
    db.commit()
    db.refresh(row)
    return {"data": _notification_data(row), "meta": _meta()}


@app.delete("/api/v1/notifications/{notification_id}", tags=["Notifications"])
def delete_notification(notification_id: int, db: Session = Depends(get_db)) -> dict:
    notifications.delete_notification(db, notification_id)
    db.commit()
    return {"data": {"notification_id": notification_id, "deleted": True}, "meta": _meta()}


# Audit trail


def _audit_data(row: AuditLog) -> dict:
    return {
        "audit_log_id": row.id,
        "action": row.action,
        "entity": row.entity,
        "entity_id": row.entity_id,
        "previous_data": row.previous_data,
        "new_data": row.new_data,
        "description": row.description,
        "performed_by": row.performed_by,
        "timestamp": _iso(row.timestamp),
    }


@app.get("/api/v1/audit-logs", tags=["Audit"])
def list_audit_logs(
    entity: Optional[str] = Query(default=None),
    entity_id: Optional[int] = Query(default=None),
    action: Optional[str] = Query(default=None),
    performed_by: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = audit.query_logs(db, entity, entity_id, action, performed_by, date_from, date_to, search)
    rows, next_cursor = _paginate_by_id(query, AuditLog, limit, cursor)
    return {"data": [_audit_data(row) for row in rows], "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/audit-logs/stats", tags=["Audit"])
def get_audit_stats(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": audit.audit_stats(db, date_from, date_to), "meta": _meta()}


@app.get("/api/v1/audit-logs/suspicious", tags=["Audit"])
def get_suspicious_activity(
    days: int = Query(default=7, ge=1, le=365),
    performed_by: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": audit.suspicious_activity(db, days=days, performed_by=performed_by), "meta": _meta()}


@app.post("/api/v1/audit-logs/purge", tags=["Audit"])
def purge_audit_logs(db: Session = Depends(get_db)) -> dict:
    result = audit.purge_old_logs(db)
    db.commit()
    return {"data": result, "meta": _meta()}


@app.get("/api/v1/audit-logs/{audit_log_id}", tags=["Audit"])
def get_audit_log(audit_log_id: int, db: Session = Depends(get_db)) -> dict:
    row = db.get(AuditLog, audit_log_id)
    if not row:
        raise HTTPException(status_code=404, detail="audit log not found")
    return {"data": _audit_data(row), "meta": _meta()}


# Reports


@app.get("/api/v1/reports/dashboard", tags=["Reports"])
def get_dashboard(db: Session = Depends(get_db)) -> dict:
    return {"data": reports.dashboard_summary(db), "meta": _meta()}


@app.get("/api/v1/reports/daily-sales", tags=["Reports"])
def get_daily_sales(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": reports.daily_sales(db, start, end), "meta": _meta()}


@app.get("/api/v1/reports/sales-stats", tags=["Reports"])
def get_sales_stats(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": reports.sales_stats(db, date_from, date_to), "meta": _meta()}


@app.get("/api/v1/reports/top-products", tags=["Reports"])
def get_top_products(
    limit: int = Query(default=10, ge=1, le=100),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": reports.top_products(db, limit, date_from, date_to), "meta": _meta()}


@app.get("/api/v1/reports/inventory", tags=["Reports"])
def get_inventory_report(db: Session = Depends(get_db)) -> dict:
    return {"data": reports.inventory_report(db), "meta": _meta()}


@app.get("/api/v1/reports/financial", tags=["Reports"])
def get_financial_summary(
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": reports.financial_summary(db, date_from, date_to), "meta": _meta()}


@app.get("/api/v1/reports/customer-insights", tags=["Reports"])
def get_customer_insights(limit: int = Query(default=10, ge=1, le=100), db: Session = Depends(get_db)) -> dict:
    return {"data": reports.customer_insights(db, limit), "meta": _meta()}


# Store settings


class SettingUpsert(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"value": "12", "setting_type": "sales", "description": "VAT percent", "is_public": True}
        }
    }
    value: str
    setting_type: str = "general"
    description: Optional[str] = None
    is_public: bool = False


def _setting_data(row: SystemSetting) -> dict:
    return {
        "setting_id": row.id,
        "key": row.key,
        "value": row.value,
        "setting_type": row.setting_type,
        "description": row.description,
        "is_public": row.is_public,
        "updated_at": _iso(row.updated_at),
    }


@app.get("/api/v1/settings", tags=["Settings"])
def list_settings(setting_type: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    return {"data": [_setting_data(row) for row in system_settings.list_settings(db, setting_type)], "meta": _meta()}


@app.get("/api/v1/settings/{key}", tags=["Settings"])
def get_setting(key: str, db: Session = Depends(get_db)) -> dict:
    return {"data": _setting_data(system_settings.get_setting(db, key)), "meta": _meta()}


@app.put("/api/v1/settings/{key}", tags=["Settings"])
def upsert_setting(
    key: str, payload: SettingUpsert, db: Session = Depends(get_db), actor: str = Depends(get_actor)
) -> dict:
    row, previous = system_settings.upsert_setting(
        db, key, payload.value, payload.setting_type, payload.description, payload.is_public
    )
    if previous is None:
        audit.log_create(db, "SystemSetting", row.id, {"key": row.key, "value": row.value}, performed_by=actor)
    else:
        audit.log_update(db, "SystemSetting", row.id, {"value": previous}, {"value": row.value}, performed_by=actor)
    db.commit()
    db.refresh(row)
    return {"data": _setting_data(row), "meta": _meta()}


@app.delete("/api/v1/settings/{key}", tags=["Settings"])
def delete_setting(key: str, db: Session = Depends(get_db), actor: str = Depends(get_actor)) -> dict:
    row = system_settings.delete_setting(db, key)
    deleted = {"key": row.key, "value": row.value}
    audit.log_delete(db, "SystemSetting", row.id, deleted, performed_by=actor)
    db.commit()
    return {"data": {"key": deleted["key"], "deleted": True}, "meta": _meta()}
