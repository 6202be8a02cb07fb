"""Per-(sport, district) rankings: rating updates, rank recomputation, tiers."""
import logging

from flask import current_app
from sqlalchemy import update
from sportconnect.app import db
from sportconnect.models import User, UserRanking
from sportconnect.services.elo import (
    DEFAULT_K_FACTOR, DEFAULT_SEED_RATING, calculate_elo_changes,
)
from sportconnect.services.upserts import insert_ignore
from sportconnect.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

DEFAULT_TIER_BOUNDS = (25, 50, 75)
TIER_NAMES = ('gold', 'red', 'blue', 'pink')
TIER_TITLES = {
    'gold': 'Elite',
    'red': 'Champion',
    'blue': 'Competitor',
    'pink': 'Rookie',
}


def rank_tier(rank, bounds=DEFAULT_TIER_BOUNDS):
    """Map a rank to its badge tier.

    ``bounds`` holds the exclusive upper rank of each tier but the last, so the
    default (25, 50, 75) yields 1-24 gold, 25-49 red, 50-74 blue, else pink.
    Unranked players are pink.
    """
    if rank is None or rank < 1:
        return TIER_NAMES[-1]
    for tier, upper in zip(TIER_NAMES, bounds):
        if rank < upper:
            return tier
    return TIER_NAMES[-1]


def configured_tier_bounds():
    bounds = tuple(current_app.config.get('RANK_TIER_BOUNDS') or DEFAULT_TIER_BOUNDS)
    if len(bounds) != len(TIER_NAMES) - 1 or list(bounds) != sorted(bounds):
        logger.warning('Ignoring invalid RANK_TIER_BOUNDS %r', bounds)
        return DEFAULT_TIER_BOUNDS
    return bounds


def ranking_to_dict(ranking, bounds=None):
    data = ranking.to_dict()
    tier = rank_tier(ranking.rank, bounds or configured_tier_bounds())
    data['tier'] = tier
    data['tier_title'] = TIER_TITLES[tier]
    return data


def district_for_user(user):
    if user.location and user.location.district:
        return user.location.district
    return current_app.config.get('DEFAULT_DISTRICT', 'unassigned')


def get_or_create_ranking(user_id, sport, district):
    """Fetch the ranking row for a partition, creating it with the seed rating."""
    seed = float(current_app.config.get('ELO_SEED_RATING', DEFAULT_SEED_RATING))
    insert_ignore(
        UserRanking,
        {
            'user_id': user_id, 'sport': sport, 'district': district,
            'elo_rating': seed, 'wins': 0, 'losses': 0,
            'updated_at': utcnow_naive(),
        },
        ('user_id', 'sport', 'district'),
    )
    return UserRanking.query.filter_by(
        user_id=user_id, sport=sport, district=district,
    ).populate_existing().one()


def apply_match_result(match):
    """Apply the Elo update for a verified match.

    Each side is rated in their own district's partition for the challenge
    sport. Must run inside the verification transaction; the caller owns the
    commit.
    """
    sport = match.challenge.sport
    k_factor = float(current_app.config.get('ELO_K_FACTOR', DEFAULT_K_FACTOR))
    winner_row = get_or_create_ranking(match.winner_id, sport, district_for_user(match.winner))
    loser_row = get_or_create_ranking(match.loser_id, sport, district_for_user(match.loser))

    winner_before = winner_row.elo_rating
    loser_before = loser_row.elo_rating
    winner_change, loser_change = calculate_elo_changes(winner_before, loser_before, k_factor)

    now = utcnow_naive()
    # Increment in SQL so concurrent updates to the same row do not lose writes.
    db.session.execute(
        update(UserRanking)
        .where(UserRanking.id == winner_row.id)
        .values(
            elo_rating=UserRanking.elo_rating + winner_change,
            wins=UserRanking.wins + 1,
            updated_at=now,
        )
    )
    db.session.execute(
        update(UserRanking)
        .where(UserRanking.id == loser_row.id)
        .values(
            elo_rating=UserRanking.elo_rating + loser_change,
            losses=UserRanking.losses + 1,
            updated_at=now,
        )
    )

    match.winner_elo_before = winner_before
    match.winner_elo_change = winner_change
    match.loser_elo_before = loser_before
    match.loser_elo_change = loser_change
    logger.info(
        'Match %s rated: winner %s %+.1f, loser %s %+.1f (%s)',
        match.id, match.winner_id, winner_change, match.loser_id, loser_change, sport,
    )
    return {(sport, winner_row.district), (sport, loser_row.district)}


def _partition_sort_key(row):
    ranking, created_at = row
    return (
        -ranking.elo_rating,
        ranking.losses,
        created_at or utcnow_naive(),
        ranking.user_id,
    )


def recalculate_ranks(sport=None, district=None, commit=True):
    """Assign dense ranks 1..N inside every (sport, district) partition.

    Ordering: rating desc, then fewer losses, then earlier account creation,
    then user id. Re-running over unchanged ratings writes the same ranks.
    Returns the number of partitions processed.
    """
    query = db.session.query(UserRanking, User.created_at).join(
        User, User.id == UserRanking.user_id,
    )
    if sport:
        query = query.filter(UserRanking.sport == sport)
    if district:
        query = query.filter(UserRanking.district == district)

    partitions = {}
    for ranking, created_at in query.populate_existing().all():
        partitions.setdefault((ranking.sport, ranking.district), []).append(
            (ranking, created_at)
        )

    changed = 0
    for rows in partitions.values():
        rows.sort(key=_partition_sort_key)
        for position, (ranking, _) in enumerate(rows, 1):
            if ranking.rank != position:
                ranking.rank = position
                changed += 1

    if commit:
        db.session.commit()
    else:
        db.session.flush()
    logger.info(
        'Recalculated ranks for %d partition(s), %d row(s) changed',
        len(partitions), changed,
    )
    return len(partitions)


def recalculate_partitions(partitions):
    for sport, district in sorted(partitions):
        recalculate_ranks(sport=sport, district=district)


def leaderboard(sport, district=None, limit=None, search=''):
    """Top ranking rows for a sport, ordered by rank, with identity fields."""
    max_rows = int(current_app.config.get('LEADERBOARD_LIMIT', 100))
    limit = max_rows if limit is None else max(1, min(int(limit), max_rows))
    query = db.session.query(UserRanking, User).join(
        User, User.id == UserRanking.user_id,
    ).filter(UserRanking.sport == sport)
    if district:
        query = query.filter(UserRanking.district == district)
    if search:
        escaped = search.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        pattern = f'%{escaped}%'
        query = query.filter(
            User.username.ilike(pattern, escape='\\') | User.full_name.ilike(pattern, escape='\\'),
        )
    rows = query.order_by(
        UserRanking.rank.is_(None),
        UserRanking.rank.asc(),
        UserRanking.elo_rating.desc(),
    ).limit(limit).all()

    bounds = configured_tier_bounds()
    entries = []
    for ranking, user in rows:
        entry = ranking_to_dict(ranking, bounds)
        entry['user'] = {
            'username': user.username,
            'full_name': user.full_name,
            'avatar_url': user.avatar_url,
        }
        entries.append(entry)
    return entries
