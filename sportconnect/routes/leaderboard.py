from flask import Blueprint, request, jsonify
from sportconnect.auth_utils import admin_required
from sportconnect.services import rankings
from sportconnect.services.challenges import normalize_sport

leaderboard_bp = Blueprint('leaderboard', __name__)


@leaderboard_bp.route('', methods=['GET'])
def get_leaderboard():
    raw_sport = (request.args.get('sport') or '').strip()
    sport = normalize_sport(raw_sport)
    if not sport:
        return jsonify({'error': 'A supported sport is required'}), 400
    district = (request.args.get('district') or '').strip() or None
    limit = request.args.get('limit', type=int)
    search = (request.args.get('search') or '').strip()[:80]

    entries = rankings.leaderboard(sport, district=district, limit=limit, search=search)
    return jsonify({'sport': sport, 'district': district, 'leaderboard': entries})


@leaderboard_bp.route('/recalculate', methods=['POST'])
@admin_required
def recalculate():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON payload'}), 400
    sport = None
    if data.get('sport'):
        sport = normalize_sport(data.get('sport'))
        if not sport:
            return jsonify({'error': 'Unsupported sport'}), 400
    district = str(data.get('district') or '').strip() or None
    partitions = rankings.recalculate_ranks(sport=sport, district=district)
    return jsonify({'partitions': partitions})
