from flask import Blueprint, request, jsonify
from sportconnect.auth_utils import login_required
from sportconnect.services import profiles
from sportconnect.services.notifications import emit_to_users

profile_bp = Blueprint('profile', __name__)


def _profile_updated(user):
    emit_to_users('session_update', (user.id,), {'reason': 'profile_updated'})
    return jsonify({'profile': profiles.get_profile(user.id, include_private=True)})


@profile_bp.route('', methods=['GET'])
@login_required
def get_own_profile():
    return jsonify({'profile': profiles.get_profile(request.current_user.id, include_private=True)})


@profile_bp.route('/<int:user_id>', methods=['GET'])
def get_user_profile(user_id):
    return jsonify({'profile': profiles.get_profile(user_id)})


@profile_bp.route('', methods=['PATCH'])
@login_required
def update_profile():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400
    user = profiles.update_profile(request.current_user, data)
    return _profile_updated(user)


@profile_bp.route('/sports', methods=['PUT'])
@login_required
def replace_sports():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400
    user = profiles.replace_sports(request.current_user, data.get('sports'))
    return _profile_updated(user)


@profile_bp.route('/location', methods=['PUT'])
@login_required
def update_location():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400
    user = profiles.update_location(request.current_user, data)
    return _profile_updated(user)
