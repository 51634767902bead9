"""
Round-robin match generation for group play.
"""
from itertools import combinations
from typing import Dict, List, Optional

from .models import SCHEDULED, Slot


def group_doc_id(group_name: str, category: Optional[str] = None) -> str:
    """Group documents are keyed by name, prefixed with the category when set."""
    return f"{category}_{group_name}" if category else group_name


def new_group_match(player1: Dict, player2: Dict, group_name: str, tournament_id: str,
                    category: Optional[str] = None) -> Dict:
    """Build a scheduled group-stage match document between two players."""
    return {
        'player1': Slot.filled(player1['uid'], player1['name']).to_dict(),
        'player2': Slot.filled(player2['uid'], player2['name']).to_dict(),
        'status': SCHEDULED,
        'winner_id': None,
        'tournament_id': tournament_id,
        'type': 'tournament',
        'group': group_name,
        'category': category,
    }


def players_by_group(players: List[Dict]) -> Dict[str, List[Dict]]:
    """Group players by their 'group' field, in roster order; ungrouped players are left out."""
    groups = {}
    for player in players:
        if player.get('group'):
            groups.setdefault(player['group'], []).append(player)
    return groups


def generate_round_robin_matches(players: List[Dict], tournament_id: str,
                                 category: Optional[str] = None) -> List[Dict]:
    """
    One match per unordered pair of members in every group.

    Groups are walked in name order and pairs in roster order, so the same
    roster always yields the same matches.
    """
    matches = []
    groups = players_by_group(players)
    for group_name in sorted(groups):
        for player1, player2 in combinations(groups[group_name], 2):
            matches.append(new_group_match(player1, player2, group_name, tournament_id, category))
    return matches
