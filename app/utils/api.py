# --- app/utils/api.py ---
from flask import jsonify

def api_ok(message, data=None, meta=None):
    payload = {
        "success": True,
        "message": message,
        "data": data,
    }
    if meta:
        payload.update(meta)
    return payload

def api_error(message, code=None, data=None):
    payload = {
        "success": False,
        "message": message,
        "data": data,
    }
    if code:
        payload["error"] = code
    return payload

# ---- response helpers -------------------------------------------------------
def ok(msg, data=None, status=200, meta=None):
    r = jsonify(api_ok(msg, data, meta)); r.status_code = status; return r

def err(msg, status=400, code=None, data=None):
    r = jsonify(api_error(msg, code, data)); r.status_code = status; return r

def page_meta(paged) -> dict:
    """Pagination block for list endpoints: { count, page, pages }."""
    return {
        "count": paged.total,
        "page": paged.page,
        "pages": paged.pages or 1,
    }

def to_int(v, default=None):
    try:
        return int(v)
    except (TypeError, ValueError):
        return default

def to_bool(v):
    if v is None or v == "":
        return None
    return str(v).strip().lower() in ("1", "true", "yes")
