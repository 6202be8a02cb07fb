"""Challenge routes: discovery, creation and participation."""
from flask import Blueprint, request, jsonify
from sportconnect.auth_utils import login_required
from sportconnect.errors import ValidationError
from sportconnect.services import challenges as challenge_service
from sportconnect.services.challenges import normalize_sport
from sportconnect.services.geo import nearby_challenges, parse_lat_lng

challenges_bp = Blueprint('challenges', __name__)


def _json_payload():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')
    return data


@challenges_bp.route('/nearby', methods=['GET'])
def get_nearby():
    lat, lng = parse_lat_lng(request.args.get('lat'), request.args.get('lng'))
    radius = request.args.get('radius', type=float)

    raw_sport = (request.args.get('sport') or '').strip()
    sport = None
    if raw_sport:
        sport = normalize_sport(raw_sport)
        if not sport:
            return jsonify({'error': f'Unsupported sport: {raw_sport}'}), 400

    results = nearby_challenges(lat, lng, radius_m=radius, sport=sport)
    return jsonify({'challenges': results})


@challenges_bp.route('', methods=['POST'])
@login_required
def create_challenge():
    challenge = challenge_service.create_challenge(request.current_user, _json_payload())
    return jsonify({'challenge': challenge_service.challenge_detail(challenge)}), 201


@challenges_bp.route('/mine', methods=['GET'])
@login_required
def my_challenges():
    return jsonify(challenge_service.user_challenges(request.current_user))


@challenges_bp.route('/<int:challenge_id>', methods=['GET'])
def get_challenge(challenge_id):
    challenge = challenge_service.get_challenge_or_404(challenge_id)
    return jsonify({'challenge': challenge_service.challenge_detail(challenge)})


@challenges_bp.route('/<int:challenge_id>/join', methods=['POST'])
@login_required
def join_challenge(challenge_id):
    data = _json_payload()
    challenge = challenge_service.join_challenge(
        challenge_id, request.current_user, payment_method=data.get('payment_method'),
    )
    return jsonify({'challenge': challenge_service.challenge_detail(challenge)})


@challenges_bp.route('/<int:challenge_id>/invite', methods=['POST'])
@login_required
def invite_to_challenge(challenge_id):
    data = _json_payload()
    challenge, invited = challenge_service.invite_to_challenge(
        challenge_id, request.current_user, data.get('user_id'),
    )
    return jsonify({'challenge': challenge.to_dict(), 'invited': invited})


@challenges_bp.route('/<int:challenge_id>/decline', methods=['POST'])
@login_required
def decline_challenge(challenge_id):
    challenge = challenge_service.decline_challenge(challenge_id, request.current_user)
    return jsonify({'challenge': challenge.to_dict()})


@challenges_bp.route('/<int:challenge_id>/cancel', methods=['POST'])
@login_required
def cancel_challenge(challenge_id):
    challenge = challenge_service.cancel_challenge(challenge_id, request.current_user)
    return jsonify({'challenge': challenge_service.challenge_detail(challenge)})
