"""
Player ranking and snake-draft group assignment.
"""
import string
from typing import Dict, List, Optional, Tuple

from .errors import ValidationError
from .store import RankingSource

MANUAL_SEED_BASE = 10000
MAX_GROUPS = len(string.ascii_uppercase)


def rank(player: Dict, ranking_source: Optional[RankingSource] = None, club_id: Optional[str] = None,
         manual_seed_base: int = MANUAL_SEED_BASE) -> int:
    """Rank value of a player; higher is stronger.

    A manual seed wins over everything: seed 1 ranks highest. Otherwise the
    club points from the ranking source are used. Manual (guest) entries and
    players without ranking data rank 0.
    """
    seed = player.get('seed')
    if seed:
        return manual_seed_base - int(seed)
    if player.get('is_manual') or not player.get('uid') or ranking_source is None or not club_id:
        return 0
    return ranking_source.get_points(player['uid'], club_id) or 0


def sort_by_rank(players: List[Dict], ranks: Dict[str, int]) -> List[Dict]:
    """Sort players by rank descending, ties broken by name ascending.

    ranks maps player document id to rank value.
    """
    return sorted(players, key=lambda p: (-ranks.get(p['id'], 0), p.get('name') or ''))


def group_names(group_count: int) -> List[str]:
    """Letters used as group names: A, B, C..."""
    return list(string.ascii_uppercase[:group_count])


def snake_group_index(index: int, group_count: int) -> int:
    """Column for the index-th ranked player.

    Even rows go left to right, odd rows right to left.
    """
    row, pos_in_row = divmod(index, group_count)
    if row % 2 == 0:
        return pos_in_row
    return group_count - 1 - pos_in_row


def snake_draft(sorted_players: List[Dict], group_count: int) -> List[Tuple[Dict, str, int]]:
    """
    Distribute ranked players over groups.

    Returns (player, group_name, seed) tuples in traversal order, where seed
    is the dense tournament-wide seed 1..N.
    """
    if group_count < 1:
        raise ValidationError("Number of groups must be at least 1")
    if group_count > MAX_GROUPS:
        raise ValidationError(f"At most {MAX_GROUPS} groups are supported")
    if not sorted_players:
        raise ValidationError("No players to assign to groups")

    names = group_names(group_count)
    assignments = []
    for index, player in enumerate(sorted_players):
        group_name = names[snake_group_index(index, group_count)]
        assignments.append((player, group_name, index + 1))
    return assignments


def members_by_group(assignments: List[Tuple[Dict, str, int]]) -> Dict[str, List[str]]:
    """Ordered player ids per group, groups in name order; empty groups omitted."""
    groups = {}
    for player, group_name, _ in assignments:
        groups.setdefault(group_name, []).append(player['id'])
    return {name: groups[name] for name in sorted(groups)}
