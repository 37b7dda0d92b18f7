# app/user/routes.py
from flask import request

from . import bp
from ..extensions import db
from ..model import Address
from ..services.order_service import validate_shipping_address
from ..utils.api import ok
from ..utils.decorators import auth_required, current_user

@bp.get("/addresses")
@auth_required
def list_addresses():
    user = current_user()
    return ok("addresses", [a.as_api() for a in user.addresses])

@bp.post("/addresses")
@auth_required
def add_address():
    user = current_user()
    data = request.get_json(silent=True) or {}
    fields = validate_shipping_address(data)

    is_default = bool(data.get("is_default")) or not user.addresses
    if is_default:
        Address.query.filter_by(user_id=user.id).update({Address.is_default: False})

    addr = Address(user_id=user.id, is_default=is_default, **fields)
    db.session.add(addr)
    db.session.commit()
    return ok("Address added", addr.as_api(), status=201)
