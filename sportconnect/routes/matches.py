"""Match result submission and verification routes."""
from flask import Blueprint, request, jsonify
from sportconnect.auth_utils import login_required
from sportconnect.errors import ValidationError
from sportconnect.services import verification

matches_bp = Blueprint('matches', __name__)


def _json_payload():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')
    return data


@matches_bp.route('', methods=['POST'])
@login_required
def submit_result():
    data = _json_payload()
    try:
        challenge_id = int(data.get('challenge_id'))
    except (TypeError, ValueError):
        return jsonify({'error': 'Challenge ID required'}), 400

    match, created = verification.submit_result(challenge_id, request.current_user, data)
    return jsonify({'match': match.to_dict(), 'created': created}), 201 if created else 200


@matches_bp.route('/pending', methods=['GET'])
@login_required
def get_pending_verifications():
    """Matches waiting for the current user to confirm or dispute."""
    verification.auto_verify_stale()
    return jsonify({'matches': verification.pending_for_user(request.current_user)})


@matches_bp.route('/<int:match_id>', methods=['GET'])
def get_match(match_id):
    verification.auto_verify_stale()
    match = verification.get_match_or_404(match_id)
    return jsonify({'match': match.to_dict()})


@matches_bp.route('/<int:match_id>/verify', methods=['POST'])
@login_required
def verify_match(match_id):
    match = verification.confirm_result(match_id, request.current_user)
    return jsonify({'match': match.to_dict()})


@matches_bp.route('/<int:match_id>/dispute', methods=['POST'])
@login_required
def dispute_match(match_id):
    data = _json_payload()
    match = verification.dispute_result(match_id, request.current_user, data.get('winner_id'))
    return jsonify({'match': match.to_dict()})


@matches_bp.route('/<int:match_id>/attest', methods=['POST'])
def attest_match(match_id):
    """Fitness-tracker webhook; the body is signed with the shared tracker secret."""
    raw_body = request.get_data(cache=True)
    verification.verify_tracker_signature(raw_body, request.headers.get('X-Tracker-Signature'))
    data = _json_payload()
    match = verification.attest_result(match_id, data.get('winner_id'))
    return jsonify({'match': match.to_dict()})
