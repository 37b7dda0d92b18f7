from flask import request, jsonify
from werkzeug.security import generate_password_hash, check_password_hash
from flask_jwt_extended import create_access_token

from . import bp
from ..model import User
from ..extensions import db
from ..utils.api import api_ok, api_error
from ..utils.decorators import auth_required, current_user


@bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()

    if not email:
        return jsonify(api_error("Email required", "VALIDATION_ERROR")), 400
    if not password or len(password) < 6:
        return jsonify(api_error("Password required, min 6 chars", "VALIDATION_ERROR")), 400
    if not name:
        return jsonify(api_error("Name required", "VALIDATION_ERROR")), 400
    if User.query.filter_by(email=email).first():
        return jsonify(api_error("Email already registered", "CONFLICT")), 409

    user = User(email=email, password_hash=generate_password_hash(password), name=name, role="user")
    db.session.add(user)
    db.session.commit()

    token = create_access_token(identity=str(user.id))
    return jsonify(api_ok("Account created successfully", data={"user": user.as_dict(), "token": token})), 201

@bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify(api_error("Email and password are required", "VALIDATION_ERROR")), 400

    user = User.query.filter_by(email=email).first()
    if not user or not check_password_hash(user.password_hash, password):
        return jsonify(api_error("Invalid email or password", "UNAUTHORIZED")), 401

    token = create_access_token(identity=str(user.id))
    return jsonify(api_ok(
        "You've logged in successfully",
        data={"user": user.as_dict(), "token": token},
    )), 200

@bp.get("/me")
@auth_required
def me():
    return jsonify(api_ok("OK", data={"user": current_user().as_dict()})), 200
