"""Distance math and nearby-challenge discovery."""
import math

from flask import current_app

from sportconnect.errors import ValidationError
from sportconnect.models import Challenge

EARTH_RADIUS_M = 6_371_000.0
_METERS_PER_DEGREE_LAT = 111_320.0


def haversine_distance(lat1, lon1, lat2, lon2):
    """Great-circle distance in meters."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(min(1.0, a)))


def _parse_coordinate(raw_value, label, limit):
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        raise ValidationError(f'{label} is required') from None
    if not math.isfinite(value) or abs(value) > limit:
        raise ValidationError(f'{label} must be between -{limit} and {limit}')
    return value


def parse_lat_lng(raw_lat, raw_lng):
    return (
        _parse_coordinate(raw_lat, 'Latitude', 90),
        _parse_coordinate(raw_lng, 'Longitude', 180),
    )


def _bounding_box(lat, lng, radius_m):
    """Degree box that contains every point within ``radius_m`` of (lat, lng).

    Longitude bounds are None near the poles or when the box would cross the
    antimeridian; the haversine pass still applies the exact radius.
    """
    dlat = radius_m / _METERS_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        return lat - dlat, lat + dlat, None, None
    dlng = radius_m / (_METERS_PER_DEGREE_LAT * cos_lat)
    if lng - dlng < -180 or lng + dlng > 180:
        return lat - dlat, lat + dlat, None, None
    return lat - dlat, lat + dlat, lng - dlng, lng + dlng


def nearby_challenges(lat, lng, radius_m=None, sport=None):
    """Open challenges within ``radius_m`` meters, nearest first.

    Each row is the challenge dict plus ``distance`` (meters) and
    ``creator_name``.
    """
    if radius_m is None:
        radius_m = float(current_app.config.get('NEARBY_DEFAULT_RADIUS_M', 50_000.0))
    max_radius = float(current_app.config.get('NEARBY_MAX_RADIUS_M', 500_000.0))
    if radius_m <= 0:
        raise ValidationError('Radius must be positive')
    radius_m = min(radius_m, max_radius)

    min_lat, max_lat, min_lng, max_lng = _bounding_box(lat, lng, radius_m)
    query = Challenge.query.filter(
        Challenge.status == 'open',
        Challenge.latitude.between(min_lat, max_lat),
    )
    if min_lng is not None:
        query = query.filter(Challenge.longitude.between(min_lng, max_lng))
    if sport:
        query = query.filter(Challenge.sport == sport)

    results = []
    for challenge in query.all():
        distance = haversine_distance(lat, lng, challenge.latitude, challenge.longitude)
        if distance > radius_m:
            continue
        data = challenge.to_dict(include_participants=False)
        data['distance'] = round(distance, 1)
        data['creator_name'] = challenge.creator.display_name if challenge.creator else None
        results.append(data)

    results.sort(key=lambda row: (row['distance'], row['id']))
    return results
