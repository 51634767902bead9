"""
Set score helpers.

A set is a dict {'player1': games, 'player2': games} with an optional
'tiebreak': {'player1': points, 'player2': points}.
"""
from typing import Dict, List, Optional


def _set_winner(set_score: Dict) -> Optional[int]:
    """Return 1 or 2 for the player who won the set, None if undecided."""
    tiebreak = set_score.get('tiebreak')
    if tiebreak:
        return 1 if tiebreak.get('player1', 0) > tiebreak.get('player2', 0) else 2
    p1 = set_score.get('player1', 0) or 0
    p2 = set_score.get('player2', 0) or 0
    if p1 > p2:
        return 1
    if p2 > p1:
        return 2
    return None


def determine_winner(sets: List[Dict], player1_id: str, player2_id: str) -> Optional[str]:
    """Return the id of the player who won more sets, or None on a tie."""
    wins = [0, 0]
    for set_score in sets or []:
        winner = _set_winner(set_score)
        if winner is not None:
            wins[winner - 1] += 1
    if wins[0] > wins[1]:
        return player1_id
    if wins[1] > wins[0]:
        return player2_id
    return None


def format_match_score(sets: List[Dict]) -> str:
    """Format sets as '6-4 7-6(5)'.

    Sets where nobody scored are skipped. A tiebreak shows the losing side's
    points when the tiebreak went the distance, otherwise the higher count.
    """
    parts = []
    for set_score in sets or []:
        p1 = set_score.get('player1', 0) or 0
        p2 = set_score.get('player2', 0) or 0
        tiebreak = set_score.get('tiebreak')
        tb1 = tiebreak.get('player1', 0) if tiebreak else 0
        tb2 = tiebreak.get('player2', 0) if tiebreak else 0
        if p1 <= 0 and p2 <= 0 and tb1 <= 0 and tb2 <= 0:
            continue
        score = f"{p1}-{p2}"
        if tiebreak:
            high, low = max(tb1, tb2), min(tb1, tb2)
            score += f"({low if high >= 7 else high})"
        parts.append(score)
    return ' '.join(parts)
