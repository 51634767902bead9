"""
Group standings and qualifier selection.

Standings are never stored; they are folded from the completed group matches
every time they are requested.
"""
from typing import Dict, List, Optional

from .models import COMPLETED, GROUP_COMPLETED, ScoringConfig, in_category, loser_of


def standing_sort_key(standing: Dict):
    """Points desc, then wins desc, then name asc."""
    return (-standing['points'], -standing['wins'], standing['name'])


def calculate_standings(players: List[Dict], matches: List[Dict], scoring: ScoringConfig,
                        category: Optional[str] = None) -> List[Dict]:
    """
    Calculate standings for every grouped player.

    Returns: [{'player_id', 'uid', 'name', 'group', 'points', 'wins',
               'losses', 'played', 'position'}, ...] sorted by
    standing_sort_key, with position counted within each group.
    """
    standings = {}
    for player in players:
        if not player.get('group') or not in_category(player, category):
            continue
        standings[player['uid']] = {
            'player_id': player['id'],
            'uid': player['uid'],
            'name': player.get('name') or '',
            'group': player['group'],
            'points': 0,
            'wins': 0,
            'losses': 0,
            'played': 0,
        }

    for match in matches:
        if match.get('status') != COMPLETED or not match.get('group') or not in_category(match, category):
            continue
        winner_id = match.get('winner_id')
        loser_id = loser_of(match)

        if winner_id in standings:
            standings[winner_id]['wins'] += 1
            standings[winner_id]['played'] += 1
            standings[winner_id]['points'] += scoring.win
        if loser_id in standings:
            standings[loser_id]['losses'] += 1
            standings[loser_id]['played'] += 1
            standings[loser_id]['points'] += scoring.loser_points(match.get('is_withdrawal'))

    ordered = sorted(standings.values(), key=standing_sort_key)
    positions = {}
    for standing in ordered:
        positions[standing['group']] = positions.get(standing['group'], 0) + 1
        standing['position'] = positions[standing['group']]
    return ordered


def standings_by_group(standings: List[Dict]) -> Dict[str, List[Dict]]:
    """Split ordered standings per group, keeping their order."""
    groups = {}
    for standing in standings:
        groups.setdefault(standing['group'], []).append(standing)
    return groups


def select_qualifiers(groups: List[Dict], standings: List[Dict], category: Optional[str] = None) -> List[Dict]:
    """
    Take the top qualifiers_count standings of every finalized group.

    Groups still in progress contribute nothing. Returns
    [{'player_id', 'uid', 'name', 'group', 'position'}, ...] in group name order.
    """
    per_group = standings_by_group(standings)
    qualifiers = []
    finalized = [g for g in groups if g.get('status') == GROUP_COMPLETED and in_category(g, category)]
    for group in sorted(finalized, key=lambda g: g['name']):
        top = per_group.get(group['name'], [])[:group.get('qualifiers_count', 0)]
        for standing in top:
            qualifiers.append({
                'player_id': standing['player_id'],
                'uid': standing['uid'],
                'name': standing['name'],
                'group': group['name'],
                'position': standing['position'],
            })
    return qualifiers


def seed_qualifiers(qualifiers: List[Dict]) -> List[Dict]:
    """
    Give qualifiers bracket seeds by group finish.

    All group winners are seeded before all runners-up, and so on; within a
    finishing position, groups are taken in name order.
    """
    ordered = sorted(qualifiers, key=lambda q: (q.get('position', 0), q.get('group') or ''))
    seeded = []
    for seed, qualifier in enumerate(ordered, start=1):
        seeded.append({**qualifier, 'seed': seed})
    return seeded
