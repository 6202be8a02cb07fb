"""In-app notifications and live update pushes."""
import json

from sportconnect.app import db, socketio
from sportconnect.models import Notification
from sportconnect.time_utils import utcnow_naive

NOTIFICATION_LIST_LIMIT = 50


def notify(user_id, notif_type, data=None):
    """Queue a notification row in the current transaction."""
    notification = Notification(
        user_id=user_id,
        notif_type=notif_type,
        data_json=json.dumps(data or {}),
    )
    db.session.add(notification)
    return notification


def emit_to_users(event, user_ids, payload=None):
    body = dict(payload or {})
    body.setdefault('updated_at', utcnow_naive().isoformat())
    for user_id in sorted({uid for uid in user_ids if uid}):
        socketio.emit(event, body, room=f'user_{user_id}')


def emit_notification_update(user_ids, reason=''):
    emit_to_users('notification_update', user_ids, {'reason': reason})


def list_notifications(user, limit=NOTIFICATION_LIST_LIMIT):
    rows = Notification.query.filter_by(user_id=user.id).order_by(
        Notification.created_at.desc(), Notification.id.desc(),
    ).limit(limit).all()
    return [row.to_dict() for row in rows]


def unread_count(user):
    return Notification.query.filter_by(user_id=user.id, read=False).count()


def mark_read(user, notification_ids):
    """Mark the caller's notifications read. Ids owned by others are ignored."""
    ids = set()
    for raw in notification_ids or []:
        try:
            ids.add(int(raw))
        except (TypeError, ValueError):
            continue
    if not ids:
        return 0
    updated = Notification.query.filter(
        Notification.user_id == user.id,
        Notification.id.in_(ids),
        Notification.read.is_(False),
    ).update({'read': True}, synchronize_session=False)
    db.session.commit()
    return updated
