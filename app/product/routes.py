# app/product/routes.py
from flask import request
from sqlalchemy import asc, desc, or_

from . import bp
from ..extensions import db
from ..model import Product
from ..utils.api import ok, err, page_meta, to_int, to_bool

# ---- helpers ---------------------------------------------------------------

def _parse_opt_float(v):
    if v is None or (isinstance(v, str) and v.strip() == ""):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None

def _apply_sort(query, sort):
    sort = (sort or "").strip()
    mapping = {
        "id": asc(Product.id), "-id": desc(Product.id),
        "name": asc(Product.name), "-name": desc(Product.name),
        "price": asc(Product.price), "-price": desc(Product.price),
        "sales": asc(Product.sales_count), "-sales": desc(Product.sales_count),
    }
    return query.order_by(mapping.get(sort, desc(Product.id)))  # newest first

# ---- routes ----------------------------------------------------------------

# GET /api/products
@bp.get("")
def list_products():
    """
    Query params:
      q          -> substring match on name
      min_price  -> float
      max_price  -> float
      in_stock   -> bool (True = stock > 0)
      sort       -> id, -id, name, -name, price, -price, sales, -sales
      page       -> int, default 1
      per_page   -> int, default 15 (cap 100)
    """
    query = Product.query.filter(Product.is_active.is_(True))

    q = (request.args.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        query = query.filter(or_(Product.name.ilike(like), Product.slug.ilike(like)))

    min_price = _parse_opt_float(request.args.get("min_price"))
    max_price = _parse_opt_float(request.args.get("max_price"))
    if min_price is not None:
        query = query.filter(Product.price >= min_price)
    if max_price is not None:
        query = query.filter(Product.price <= max_price)

    in_stock = to_bool(request.args.get("in_stock"))
    if in_stock is True:
        query = query.filter(Product.stock > 0)
    elif in_stock is False:
        query = query.filter(Product.stock <= 0)

    query = _apply_sort(query, request.args.get("sort"))

    page = max(to_int(request.args.get("page"), 1), 1)
    per_page = min(max(to_int(request.args.get("per_page"), 15), 1), 100)
    paged = query.paginate(page=page, per_page=per_page, error_out=False)

    return ok("products", [p.as_api() for p in paged.items], meta=page_meta(paged))

# GET /api/products/<id>
@bp.get("/<int:pid>")
def get_product(pid: int):
    p = db.session.get(Product, pid)
    if not p or not p.is_active:
        return err("Product not found", 404, code="NOT_FOUND")
    return ok("product", p.as_api())
