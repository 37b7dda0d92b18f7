from flask import request

from . import bp
from ..extensions import db
from ..model import Notification
from ..utils.api import ok, err, page_meta, to_bool, to_int
from ..utils.decorators import auth_required, current_user

@bp.get("")
@auth_required
def list_notifications():
    q = Notification.query.filter_by(user_id=current_user().id)
    unread = to_bool(request.args.get("unread"))
    if unread:
        q = q.filter(Notification.is_read.is_(False))

    page = max(to_int(request.args.get("page"), 1), 1)
    limit = min(max(to_int(request.args.get("limit"), 20), 1), 100)
    paged = q.order_by(Notification.id.desc()).paginate(page=page, per_page=limit, error_out=False)
    return ok("notifications", [n.as_api() for n in paged.items], meta=page_meta(paged))

@bp.put("/<int:note_id>/read")
@auth_required
def mark_as_read(note_id):
    note = db.session.get(Notification, note_id)
    if not note or note.user_id != current_user().id:
        return err("Notification not found", 404, code="NOT_FOUND")
    note.is_read = True
    db.session.commit()
    return ok("Marked as read", note.as_api())
