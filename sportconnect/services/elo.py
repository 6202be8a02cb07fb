"""
Elo rating engine for head-to-head challenges.

- Ratings live per (user, sport, district); new rows start at the seed rating.
- K-factor is a single configurable constant shared by both sides, so every
  update is zero-sum: what the winner gains the loser loses.
- Formula: E = 1 / (1 + 10^((opponent - own) / 400))
           ΔR = K * (actual - expected)
- Deltas are not rounded; rounding would break conservation over many games.
"""
import math

DEFAULT_K_FACTOR = 32.0
DEFAULT_SEED_RATING = 1000.0


def expected_score(own_rating, opponent_rating):
    """Win probability of ``own_rating`` against ``opponent_rating``."""
    return 1.0 / (1.0 + math.pow(10, (opponent_rating - own_rating) / 400.0))


def calculate_elo_changes(winner_rating, loser_rating, k_factor=DEFAULT_K_FACTOR):
    """Return ``(winner_change, loser_change)`` for one decided match.

    >>> calculate_elo_changes(1000, 1000, 32)
    (16.0, -16.0)
    """
    if k_factor <= 0:
        raise ValueError('K-factor must be positive')
    winner_expected = expected_score(winner_rating, loser_rating)
    loser_expected = 1.0 - winner_expected
    winner_change = k_factor * (1.0 - winner_expected)
    loser_change = k_factor * (0.0 - loser_expected)
    return winner_change, loser_change
