from flask import Blueprint, request, jsonify
from sportconnect.auth_utils import login_required
from sportconnect.services import notifications as notification_service

notifications_bp = Blueprint('notifications', __name__)


@notifications_bp.route('', methods=['GET'])
@login_required
def get_notifications():
    user = request.current_user
    return jsonify({
        'notifications': notification_service.list_notifications(user),
        'unread': notification_service.unread_count(user),
    })


@notifications_bp.route('/read', methods=['POST'])
@login_required
def mark_read():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400
    ids = data.get('ids')
    if not isinstance(ids, list):
        return jsonify({'error': 'ids must be a list of notification IDs'}), 400
    updated = notification_service.mark_read(request.current_user, ids)
    return jsonify({'updated': updated})
