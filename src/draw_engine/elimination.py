"""
Single elimination bracket layout and winner advancement.
"""
import math
from typing import Dict, List, Optional, Tuple

from .errors import ValidationError
from .models import COMPLETED, Slot

SUPPORTED_BRACKET_SIZES = (8, 16, 32, 64, 128)
MAX_BRACKET_SIZE = SUPPORTED_BRACKET_SIZES[-1]


def get_round_name(players_in_round: int) -> str:
    """Get the name of a round based on number of players in it."""
    if players_in_round == 2:
        return 'final'
    elif players_in_round == 4:
        return 'semi_finals'
    elif players_in_round == 8:
        return 'quarter_finals'
    else:
        return f'round_of_{players_in_round}'


def calculate_bracket_size(num_players: int) -> int:
    """
    Smallest supported bracket size holding num_players.

    Sizes above 128 are capped at 128; callers must not pass more players
    than that.
    """
    for size in SUPPORTED_BRACKET_SIZES:
        if num_players <= size:
            return size
    return MAX_BRACKET_SIZE


def calculate_draw_size(num_players: int, collapse_bye_rounds: bool = True) -> int:
    """
    Size of the bracket that is actually built.

    With collapse_bye_rounds, leading rounds in which nobody could meet an
    opponent are dropped, halving the bracket until more than half of it is
    occupied (2 players play a single final).
    """
    size = calculate_bracket_size(num_players)
    if collapse_bye_rounds:
        while size > 2 and num_players <= size // 2:
            size //= 2
    return size


def calculate_byes(num_players: int, draw_size: int) -> int:
    """Number of first round byes."""
    return max(draw_size - num_players, 0)


def _generate_bracket_order(bracket_size: int) -> List[int]:
    """
    Seed order of the first round slots.

    Each doubling step replaces seed p at position i with the pair
    (p, 2L+1-p), mirrored to (2L+1-p, p) at odd positions, where 2L is the
    new size. Seeds 1 and 2 land in opposite halves, 1-4 in different
    quarters, and so on.

    For 4 players: [1, 4, 3, 2]
    For 8 players: [1, 8, 5, 4, 3, 6, 7, 2]
    """
    order = [1]
    while len(order) < bracket_size:
        total = 2 * len(order) + 1
        next_order = []
        for index, seed in enumerate(order):
            if index % 2 == 0:
                next_order.extend([seed, total - seed])
            else:
                next_order.extend([total - seed, seed])
        order = next_order
    return order


def order_by_seed(players: List[Dict]) -> List[Dict]:
    """Sort by seed ascending; unseeded players go last, keeping their order."""
    return sorted(players, key=lambda p: (p.get('seed') is None, p.get('seed') or 0))


def next_position(bracket_position: int) -> Tuple[int, int]:
    """Parent position and the parent slot (1 or 2) a match feeds."""
    return (bracket_position + 1) // 2, 1 if bracket_position % 2 == 1 else 2


def plan_bracket(qualifiers: List[Dict], collapse_bye_rounds: bool = True) -> Dict:
    """
    Lay out every match of a single elimination bracket.

    Returns dict with:
    - 'draw_size': number of first round slots
    - 'total_rounds': number of rounds
    - 'byes': number of first round byes
    - 'matches': match plans ordered from the final back to round 1, each with
      round_number, bracket_position, bracket_round, player1/player2 slots,
      is_bye, and next_position/next_match_slot (None for the final)

    Round 1 slots are filled from the seed order; a pair with a single player
    is a bye. Later round slots start empty, or as a bye when nothing can
    ever reach them. Matches no player can reach are left out.
    """
    if len(qualifiers) < 2:
        raise ValidationError("At least 2 qualified players are needed for a bracket")
    if len(qualifiers) > MAX_BRACKET_SIZE:
        raise ValidationError(f"Brackets hold at most {MAX_BRACKET_SIZE} players, got {len(qualifiers)}")

    ordered = order_by_seed(qualifiers)
    seed_to_player = {index + 1: player for index, player in enumerate(ordered)}
    draw_size = calculate_draw_size(len(ordered), collapse_bye_rounds)
    total_rounds = int(math.log2(draw_size))
    bracket_order = _generate_bracket_order(draw_size)

    # Players reachable by each (round, position), counted bottom-up
    reachable = {}
    first_round = {}
    for position in range(1, draw_size // 2 + 1):
        player1 = seed_to_player.get(bracket_order[(position - 1) * 2])
        player2 = seed_to_player.get(bracket_order[(position - 1) * 2 + 1])
        first_round[position] = (player1, player2)
        reachable[(1, position)] = (player1 is not None) + (player2 is not None)
    for round_number in range(2, total_rounds + 1):
        for position in range(1, 2 ** (total_rounds - round_number) + 1):
            reachable[(round_number, position)] = (reachable[(round_number - 1, position * 2 - 1)] +
                                                   reachable[(round_number - 1, position * 2)])

    matches = []
    for round_number in range(total_rounds, 0, -1):
        players_in_round = draw_size // 2 ** (round_number - 1)
        for position in range(1, players_in_round // 2 + 1):
            if not reachable[(round_number, position)]:
                continue
            if round_number == 1:
                player1, player2 = first_round[position]
                slot1, slot2 = Slot.from_player(player1), Slot.from_player(player2)
            else:
                slot1 = Slot.empty() if reachable[(round_number - 1, position * 2 - 1)] else Slot.bye()
                slot2 = Slot.empty() if reachable[(round_number - 1, position * 2)] else Slot.bye()
            if round_number < total_rounds:
                parent_position, parent_slot = next_position(position)
            else:
                parent_position, parent_slot = None, None
            matches.append({
                'round_number': round_number,
                'bracket_position': position,
                'bracket_round': get_round_name(players_in_round),
                'player1': slot1,
                'player2': slot2,
                'is_bye': round_number == 1 and (slot1.is_bye or slot2.is_bye),
                'next_position': parent_position,
                'next_match_slot': parent_slot,
            })

    return {
        'draw_size': draw_size,
        'total_rounds': total_rounds,
        'byes': calculate_byes(len(ordered), draw_size),
        'matches': matches,
    }


def bye_winner(player1: Slot, player2: Slot) -> Optional[Slot]:
    """The player who advances without playing: one filled slot facing a bye."""
    if player1.is_filled and player2.is_bye:
        return player1
    if player2.is_filled and player1.is_bye:
        return player2
    return None


def winner_slot(match: Dict, winner_id: str) -> Slot:
    """Slot of the winning player of a stored match."""
    for key in ('player1', 'player2'):
        slot = Slot.from_dict(match.get(key))
        if slot.is_filled and slot.uid == winner_id:
            return slot
    raise ValidationError(f"Winner {winner_id} is not a player of match {match.get('id')}")


def advancement_update(match: Dict, winner_id: str) -> Optional[Tuple[str, Dict]]:
    """
    Partial update that moves the winner into the parent match.

    Returns (next_match_id, fields), or None for the final. Only the
    designated slot of the parent is touched.
    """
    next_match_id = match.get('next_match_id')
    if not next_match_id:
        return None
    slot = winner_slot(match, winner_id)
    field = 'player1' if (match.get('next_match_slot') or 1) == 1 else 'player2'
    return next_match_id, {field: slot.to_dict()}


def get_bracket_display(matches: List[Dict]) -> Dict:
    """
    Group stored bracket matches by round for display.

    Returns dict with rounds (name -> matches ordered by position, first
    round first), total_rounds, byes and champion (uid/name of the winner of
    a completed final, else None).
    """
    bracket_matches = sorted(
        (m for m in matches if m.get('round_number')),
        key=lambda m: (m['round_number'], m['bracket_position'])
    )
    rounds = {}
    for match in bracket_matches:
        rounds.setdefault(match['bracket_round'], []).append(match)

    champion = None
    total_rounds = max((m['round_number'] for m in bracket_matches), default=0)
    finals = [m for m in bracket_matches if m['round_number'] == total_rounds]
    if finals and finals[0].get('status') == COMPLETED and finals[0].get('winner_id'):
        slot = winner_slot(finals[0], finals[0]['winner_id'])
        champion = {'uid': slot.uid, 'name': slot.name}

    return {
        'rounds': rounds,
        'total_rounds': total_rounds,
        'byes': sum(1 for m in bracket_matches if m.get('is_bye')),
        'champion': champion,
    }
