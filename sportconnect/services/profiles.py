"""Profile reads and onboarding writes: personal info, sports, location."""
import re

from sportconnect.app import db
from sportconnect.errors import Conflict, NotFound, ValidationError
from sportconnect.models import GENDERS, User, UserLocation, UserSport
from sportconnect.services.challenges import normalize_sport
from sportconnect.services.geo import parse_lat_lng
from sportconnect.services.rankings import configured_tier_bounds, ranking_to_dict
from sportconnect.services.upserts import upsert
from sportconnect.time_utils import parse_iso_date, utcnow_naive

MIN_SKILL_LEVEL = 1
MAX_SKILL_LEVEL = 10
DEFAULT_SKILL_LEVEL = 5

_USERNAME_PATTERN = re.compile(r'^[A-Za-z0-9_]{3,80}$')
_TEXT_LIMITS = {
    'full_name': 120,
    'bio': 1000,
    'college': 200,
    'avatar_url': 500,
}


def get_profile(user_id, include_private=False):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')
    data = user.to_dict() if include_private else user.to_public_dict()
    data['sports'] = [sport.to_dict() for sport in sorted(user.sports, key=lambda s: s.sport)]
    data['location'] = user.location.to_dict() if user.location else None
    bounds = configured_tier_bounds()
    data['rankings'] = [
        ranking_to_dict(ranking, bounds)
        for ranking in sorted(user.rankings, key=lambda r: (r.sport, r.district))
    ]
    return data


def normalize_profile_payload(data):
    """Validate a partial profile update. Returns ``(updates, errors)``."""
    updates = {}
    errors = []

    for field, limit in _TEXT_LIMITS.items():
        if field not in data:
            continue
        text = str(data.get(field) or '').strip()
        if len(text) > limit:
            errors.append(f'{field} must be at most {limit} characters')
            continue
        updates[field] = text or None
    if 'full_name' in updates and updates['full_name'] is None:
        updates['full_name'] = ''

    if 'username' in data:
        username = str(data.get('username') or '').strip()
        if not _USERNAME_PATTERN.match(username):
            errors.append('Username must be 3-80 letters, numbers or underscores')
        else:
            updates['username'] = username

    if 'dob' in data:
        if data.get('dob') in (None, ''):
            updates['dob'] = None
        else:
            dob = parse_iso_date(data.get('dob'))
            if not dob:
                errors.append('dob must be an ISO date (YYYY-MM-DD)')
            elif dob >= utcnow_naive().date():
                errors.append('dob must be in the past')
            else:
                updates['dob'] = dob

    if 'gender' in data:
        gender = data.get('gender')
        if gender in (None, ''):
            updates['gender'] = None
        elif str(gender).strip().lower() in GENDERS:
            updates['gender'] = str(gender).strip().lower()
        else:
            errors.append(f'gender must be one of: {", ".join(GENDERS)}')

    return updates, errors


def update_profile(user, data):
    updates, errors = normalize_profile_payload(data)
    if errors:
        raise ValidationError(errors[0], errors=errors)
    if 'username' in updates and updates['username'] != user.username:
        taken = User.query.filter(
            User.username == updates['username'], User.id != user.id,
        ).first()
        if taken:
            raise Conflict('Username already taken')
    for field, value in updates.items():
        setattr(user, field, value)
    db.session.commit()
    return user


def _parse_skill_level(raw_value):
    if raw_value in (None, ''):
        return DEFAULT_SKILL_LEVEL
    if isinstance(raw_value, bool):
        return None
    try:
        level = int(raw_value)
    except (TypeError, ValueError):
        return None
    if level < MIN_SKILL_LEVEL or level > MAX_SKILL_LEVEL:
        return None
    return level


def replace_sports(user, raw_sports):
    """Replace the user's sports with ``raw_sports`` (list of names or dicts)."""
    if not isinstance(raw_sports, list):
        raise ValidationError('sports must be a list')

    selected = {}
    for item in raw_sports:
        if isinstance(item, dict):
            raw_name, raw_level = item.get('sport'), item.get('skill_level')
        else:
            raw_name, raw_level = item, None
        sport = normalize_sport(raw_name)
        if not sport:
            raise ValidationError(f'Unsupported sport: {raw_name}')
        if sport in selected:
            raise ValidationError(f'Duplicate sport: {sport}')
        level = _parse_skill_level(raw_level)
        if level is None:
            raise ValidationError(
                f'skill_level must be between {MIN_SKILL_LEVEL} and {MAX_SKILL_LEVEL}'
            )
        selected[sport] = level

    UserSport.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    for sport, level in selected.items():
        db.session.add(UserSport(user_id=user.id, sport=sport, skill_level=level))
    db.session.commit()
    return user


def update_location(user, data):
    district = str(data.get('district') or '').strip()
    if not district:
        raise ValidationError('District is required')
    if len(district) > 120:
        raise ValidationError('District must be at most 120 characters')
    latitude, longitude = parse_lat_lng(data.get('latitude'), data.get('longitude'))

    values = {
        'user_id': user.id,
        'district': district,
        'latitude': latitude,
        'longitude': longitude,
        'last_updated': utcnow_naive(),
    }
    upsert(UserLocation, values, ('user_id',), ('district', 'latitude', 'longitude', 'last_updated'))
    db.session.commit()
    return user
