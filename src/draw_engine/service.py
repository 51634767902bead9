"""
Tournament operations: group draw, group play, qualification and bracket.

Every operation reads what it needs from the store, computes with the pure
functions of the sibling modules, and writes the result back as a sequence of
separate store calls. Nothing here is transactional: a failure part way
through raises PartialFailureError and the documented recovery is to reset
and regenerate.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from .config import get_default_config
from .elimination import advancement_update, bye_winner, get_bracket_display, plan_bracket
from .errors import ConflictError, NotFoundError, ValidationError, WriteSequence
from .groups import generate_round_robin_matches, group_doc_id, new_group_match
from .models import COMPLETED, GROUP_COMPLETED, GROUP_IN_PROGRESS, SCHEDULED, ScoringConfig, in_category, match_slots
from .rankings import RankingRecalculator, is_manual_uid
from .scoring import determine_winner, format_match_score
from .seeding import members_by_group, rank, snake_draft, sort_by_rank
from .standings import calculate_standings, seed_qualifiers, select_qualifiers
from .store import ClubPointsRankingSource, DocumentStore, Increment, RankingSource

logger = logging.getLogger(__name__)

TOURNAMENTS = ('tournaments',)
USERS = ('users',)
CLUBS = ('clubs',)


def _is_group_match(match: Dict) -> bool:
    return bool(match.get('group'))


def _is_bracket_match(match: Dict) -> bool:
    return bool(match.get('round_number'))


def _is_active(player: Dict) -> bool:
    return player.get('registration_status') != 'rejected'


def _player_summary(player: Dict) -> Dict:
    return {'id': player['id'], 'uid': player.get('uid'), 'name': player.get('name'), 'category': player.get('category')}


class TournamentService:
    def __init__(self, store: DocumentStore, ranking_source: Optional[RankingSource] = None,
                 config: Optional[Dict] = None):
        self.store = store
        self.config = config or get_default_config()
        self.ranking_source = ranking_source or ClubPointsRankingSource(store)
        self.rankings = RankingRecalculator(store, self.config)

    # Lookups

    def _path(self, tournament_id: str, collection: str):
        return TOURNAMENTS + (tournament_id, collection)

    def get_tournament(self, tournament_id: str) -> Dict:
        tournament = self.store.get(TOURNAMENTS, tournament_id)
        if tournament is None:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    def get_players(self, tournament_id: str, category: Optional[str] = None) -> List[Dict]:
        players = self.store.query(self._path(tournament_id, 'players'))
        return [p for p in players if in_category(p, category)]

    def get_player(self, tournament_id: str, player_id: str) -> Dict:
        player = self.store.get(self._path(tournament_id, 'players'), player_id)
        if player is None:
            raise NotFoundError(f"Player {player_id} not found in tournament {tournament_id}")
        return player

    def get_matches(self, tournament_id: str, category: Optional[str] = None) -> List[Dict]:
        matches = self.store.query(self._path(tournament_id, 'matches'))
        return [m for m in matches if in_category(m, category)]

    def get_match(self, tournament_id: str, match_id: str) -> Dict:
        match = self.store.get(self._path(tournament_id, 'matches'), match_id)
        if match is None:
            raise NotFoundError(f"Match {match_id} not found in tournament {tournament_id}")
        return match

    def get_groups(self, tournament_id: str, category: Optional[str] = None) -> List[Dict]:
        groups = self.store.query(self._path(tournament_id, 'groups'))
        return sorted((g for g in groups if in_category(g, category)), key=lambda g: g['name'])

    def get_group(self, tournament_id: str, group_name: str, category: Optional[str] = None) -> Dict:
        group = self.store.get(self._path(tournament_id, 'groups'), group_doc_id(group_name, category))
        if group is None:
            raise NotFoundError(f"Group {group_name} not found in tournament {tournament_id}")
        return group

    def _standings_scoring(self, tournament: Dict) -> ScoringConfig:
        return ScoringConfig.from_dict(tournament.get('scoring_config'), self.config['scoring'])

    def _club_scoring(self, club_id: str) -> ScoringConfig:
        club = self.store.get(CLUBS, club_id) or {}
        return ScoringConfig.from_dict(club.get('scoring_config'), self.config['club_scoring'])

    def _commit_in_chunks(self, writes, sequence: WriteSequence):
        size = min(self.config['max_batch_size'], self.store.max_batch_size)
        for start in range(0, len(writes), size):
            chunk = writes[start:start + size]
            self.store.batch_update(chunk)
            sequence.step(len(chunk))

    # Seeding

    def _check_ready(self, players: List[Dict]):
        unready = [p for p in players
                   if not p.get('is_checked_in') or (p.get('payment_status') != 'paid' and not p.get('is_wildcard'))]
        if unready:
            names = ', '.join(p.get('name') or p['id'] for p in unready)
            raise ValidationError(f"Players not ready: {names}")

    def _ranked_players(self, tournament: Dict, players: List[Dict]) -> List[Dict]:
        club_id = tournament.get('club_id')
        ranks = {p['id']: rank(p, self.ranking_source, club_id, self.config['manual_seed_base']) for p in players}
        return sort_by_rank(players, ranks)

    def assign_groups(self, tournament_id: str, group_count: int, category: Optional[str] = None) -> Dict[str, List[str]]:
        """
        Snake-draft the roster into groups A, B, C...

        Group documents are written before the players that point at them,
        and groups left over from an earlier draw are deleted last, so a
        player's group always names an existing group document.

        Returns {group_name: [player_id, ...]}.
        """
        tournament = self.get_tournament(tournament_id)
        roster = self.get_players(tournament_id, category)
        players = [p for p in roster if _is_active(p)]
        if self.config['require_ready_players']:
            self._check_ready(players)
        if any(_is_group_match(m) for m in self.get_matches(tournament_id, category)):
            raise ConflictError("Group matches already exist; reset the group stage first")

        assignments = snake_draft(self._ranked_players(tournament, players), group_count)
        members = members_by_group(assignments)
        stale_groups = [g for g in self.get_groups(tournament_id, category) if g['name'] not in members]

        writes = [(self._path(tournament_id, 'players'), player['id'], {'group': group_name, 'seed': seed})
                  for player, group_name, seed in assignments]
        writes += [(self._path(tournament_id, 'players'), p['id'], {'group': None})
                   for p in roster if not _is_active(p) and p.get('group')]

        with WriteSequence('assign groups') as sequence:
            for group_name, player_ids in members.items():
                self.store.set(self._path(tournament_id, 'groups'), group_doc_id(group_name, category), {
                    'name': group_name,
                    'category': category,
                    'player_ids': player_ids,
                    'status': GROUP_IN_PROGRESS,
                    'qualifiers_count': self.config['default_qualifiers_count'],
                })
                sequence.step()
            self._commit_in_chunks(writes, sequence)
            for group in stale_groups:
                self.store.delete(self._path(tournament_id, 'groups'), group['id'])
                sequence.step()

        logger.info("Assigned %d players to %d groups in tournament %s (category %s)",
                    len(assignments), len(members), tournament_id, category)
        return members

    def auto_seed_players(self, tournament_id: str, category: Optional[str] = None) -> int:
        """Give every player a dense seed 1..N by rank without touching groups."""
        tournament = self.get_tournament(tournament_id)
        players = self._ranked_players(tournament, self.get_players(tournament_id, category))
        writes = [(self._path(tournament_id, 'players'), p['id'], {'seed': index + 1})
                  for index, p in enumerate(players)]
        with WriteSequence('auto seed players') as sequence:
            self._commit_in_chunks(writes, sequence)
        logger.info("Seeded %d players in tournament %s", len(writes), tournament_id)
        return len(writes)

    def update_player_seed(self, tournament_id: str, player_id: str, seed: Optional[int]):
        if seed is not None and int(seed) < 1:
            raise ValidationError("Seed must be a positive integer")
        self.get_player(tournament_id, player_id)
        self.store.update(self._path(tournament_id, 'players'), player_id,
                          {'seed': int(seed) if seed is not None else None})

    # Group play

    def generate_group_matches(self, tournament_id: str, category: Optional[str] = None) -> int:
        """Create the round-robin matches of every group; returns how many were created."""
        self.get_tournament(tournament_id)
        if any(_is_group_match(m) for m in self.get_matches(tournament_id, category)):
            raise ConflictError("Group matches already exist; reset the group stage first")
        players = [p for p in self.get_players(tournament_id, category) if _is_active(p)]
        matches = generate_round_robin_matches(players, tournament_id, category)

        with WriteSequence('generate group matches') as sequence:
            for match in matches:
                self.store.add(self._path(tournament_id, 'matches'), match)
                sequence.step()

        logger.info("Generated %d group matches in tournament %s (category %s)",
                    len(matches), tournament_id, category)
        return len(matches)

    def finalize_group(self, tournament_id: str, group_name: str, qualifiers_count: Optional[int] = None,
                       category: Optional[str] = None):
        """Close a group's round robin and fix how many of its players qualify."""
        group = self.get_group(tournament_id, group_name, category)
        if qualifiers_count is None:
            qualifiers_count = group.get('qualifiers_count', self.config['default_qualifiers_count'])
        qualifiers_count = int(qualifiers_count)
        if qualifiers_count < 1:
            raise ValidationError("At least one player must qualify from a group")
        self.store.update(self._path(tournament_id, 'groups'), group['id'], {
            'status': GROUP_COMPLETED,
            'qualifiers_count': qualifiers_count,
        })
        logger.info("Finalized group %s of tournament %s with %d qualifiers", group_name, tournament_id, qualifiers_count)

    def unfinalize_group(self, tournament_id: str, group_name: str, category: Optional[str] = None):
        group = self.get_group(tournament_id, group_name, category)
        self.store.update(self._path(tournament_id, 'groups'), group['id'], {'status': GROUP_IN_PROGRESS})
        logger.info("Reopened group %s of tournament %s", group_name, tournament_id)

    def are_all_groups_finalized(self, tournament_id: str, category: Optional[str] = None) -> bool:
        groups = self.get_groups(tournament_id, category)
        return bool(groups) and all(g.get('status') == GROUP_COMPLETED for g in groups)

    def get_standings(self, tournament_id: str, category: Optional[str] = None) -> List[Dict]:
        tournament = self.get_tournament(tournament_id)
        players = self.get_players(tournament_id, category)
        matches = self.get_matches(tournament_id, category)
        return calculate_standings(players, matches, self._standings_scoring(tournament), category)

    def get_qualifiers(self, tournament_id: str, category: Optional[str] = None) -> List[Dict]:
        """Top players of every finalized group, seeded by group finish."""
        standings = self.get_standings(tournament_id, category)
        groups = self.get_groups(tournament_id, category)
        return seed_qualifiers(select_qualifiers(groups, standings, category))

    def add_player_to_group(self, tournament_id: str, group_name: str, player_id: str,
                            category: Optional[str] = None) -> int:
        """Put a player into a group and schedule a match against every member already there."""
        player = self.get_player(tournament_id, player_id)
        group = self.get_group(tournament_id, group_name, category)
        if player.get('group'):
            raise ConflictError(f"{player.get('name') or player_id} is already in group {player['group']}; remove them first")
        opponents = [p for p in self.get_players(tournament_id, category)
                     if p.get('group') == group_name and p['id'] != player_id]
        player_ids = list(group.get('player_ids') or [])
        if player_id not in player_ids:
            player_ids.append(player_id)

        with WriteSequence('add player to group') as sequence:
            self.store.update(self._path(tournament_id, 'groups'), group['id'], {'player_ids': player_ids})
            sequence.step()
            self.store.update(self._path(tournament_id, 'players'), player_id, {'group': group_name})
            sequence.step()
            for opponent in opponents:
                self.store.add(self._path(tournament_id, 'matches'),
                               new_group_match(player, opponent, group_name, tournament_id, category))
                sequence.step()

        logger.info("Added %s to group %s, created %d matches", player.get('name'), group_name, len(opponents))
        return len(opponents)

    def remove_player_from_group(self, tournament_id: str, group_name: str, player_id: str,
                                 category: Optional[str] = None) -> int:
        """Take a player out of a group and delete their matches in it."""
        player = self.get_player(tournament_id, player_id)
        group = self.get_group(tournament_id, group_name, category)
        doomed = []
        for match in self.get_matches(tournament_id, category):
            if match.get('group') != group_name:
                continue
            uids = {slot.uid for slot in match_slots(match) if slot.is_filled}
            if player.get('uid') in uids:
                doomed.append(match['id'])

        with WriteSequence('remove player from group') as sequence:
            self.store.update(self._path(tournament_id, 'players'), player_id, {'group': None})
            sequence.step()
            self.store.update(self._path(tournament_id, 'groups'), group['id'], {
                'player_ids': [pid for pid in group.get('player_ids') or [] if pid != player_id],
            })
            sequence.step()
            for match_id in doomed:
                self.store.delete(self._path(tournament_id, 'matches'), match_id)
                sequence.step()

        logger.info("Removed %s from group %s, deleted %d matches", player.get('name'), group_name, len(doomed))
        return len(doomed)

    def get_players_without_group(self, tournament_id: str, category: Optional[str] = None) -> List[Dict]:
        return [_player_summary(p) for p in self.get_players(tournament_id, category) if not p.get('group')]

    def get_group_players(self, tournament_id: str, group_name: str, category: Optional[str] = None) -> List[Dict]:
        return [_player_summary(p) for p in self.get_players(tournament_id, category)
                if p.get('group') == group_name]

    def reset_group_stage(self, tournament_id: str, category: Optional[str] = None):
        """
        Return a category to its state before the draw.

        Players are detached first, then group documents and group matches
        are deleted.
        """
        self.get_tournament(tournament_id)
        players = [p for p in self.get_players(tournament_id, category) if p.get('group')]
        groups = self.get_groups(tournament_id, category)
        matches = [m for m in self.get_matches(tournament_id, category) if _is_group_match(m)]
        writes = [(self._path(tournament_id, 'players'), p['id'], {'group': None}) for p in players]

        with WriteSequence('reset group stage') as sequence:
            self._commit_in_chunks(writes, sequence)
            for group in groups:
                self.store.delete(self._path(tournament_id, 'groups'), group['id'])
                sequence.step()
            for match in matches:
                self.store.delete(self._path(tournament_id, 'matches'), match['id'])
                sequence.step()

        logger.info("Reset group stage of tournament %s (category %s): %d groups, %d matches deleted",
                    tournament_id, category, len(groups), len(matches))

    # Bracket

    def generate_bracket(self, tournament_id: str, qualified_players: List[Dict],
                         category: Optional[str] = None) -> Dict:
        """
        Build the elimination bracket for the qualified players.

        Matches are created from the final back to round 1 so every match can
        point at its already created parent. A bye is completed on creation
        and its player is moved up straight away, cascading through further
        byes.

        Returns dict with draw_size, total_rounds, byes and match_ids
        (keyed 'round-position').
        """
        self.get_tournament(tournament_id)
        if any(_is_bracket_match(m) for m in self.get_matches(tournament_id, category)):
            raise ConflictError("A bracket already exists; delete it first")
        plan = plan_bracket(qualified_players, self.config['collapse_bye_rounds'])

        tree = {}
        with WriteSequence('generate bracket') as sequence:
            for planned in plan['matches']:
                round_number, position = planned['round_number'], planned['bracket_position']
                winner = bye_winner(planned['player1'], planned['player2']) if planned['is_bye'] else None
                match = {
                    'player1': planned['player1'].to_dict(),
                    'player2': planned['player2'].to_dict(),
                    'status': COMPLETED if winner else SCHEDULED,
                    'winner_id': winner.uid if winner else None,
                    'is_bye': planned['is_bye'],
                    'round_number': round_number,
                    'bracket_position': position,
                    'bracket_round': planned['bracket_round'],
                    'next_match_id': None,
                    'next_match_slot': None,
                    'tournament_id': tournament_id,
                    'type': 'tournament',
                    'category': category,
                    'created_at': datetime.now().isoformat(),
                }
                if planned['next_position']:
                    match['next_match_id'] = tree[(round_number + 1, planned['next_position'])]
                    match['next_match_slot'] = planned['next_match_slot']
                match_id = self.store.add(self._path(tournament_id, 'matches'), match)
                tree[(round_number, position)] = match_id
                sequence.step()
                if winner:
                    sequence.step(self._advance_and_cascade(tournament_id, match_id, winner.uid))

        logger.info("Generated %d-slot bracket with %d byes in tournament %s (category %s)",
                    plan['draw_size'], plan['byes'], tournament_id, category)
        return {
            'draw_size': plan['draw_size'],
            'total_rounds': plan['total_rounds'],
            'byes': plan['byes'],
            'match_ids': {f"{r}-{p}": match_id for (r, p), match_id in tree.items()},
        }

    def _advance_and_cascade(self, tournament_id: str, match_id: str, winner_id: str) -> int:
        """Move a winner up, completing every parent that is left facing only a bye."""
        writes = 0
        while match_id:
            parent_id = self.advance_winner(tournament_id, match_id, winner_id)
            writes += 1
            if not parent_id:
                break
            parent = self.get_match(tournament_id, parent_id)
            winner = bye_winner(*match_slots(parent))
            if winner is None:
                break
            self.store.update(self._path(tournament_id, 'matches'), parent_id, {
                'status': COMPLETED,
                'winner_id': winner.uid,
                'is_bye': True,
            })
            writes += 1
            match_id, winner_id = parent_id, winner.uid
        return writes

    def advance_winner(self, tournament_id: str, match_id: str, winner_id: str) -> Optional[str]:
        """
        Write a match winner into the designated slot of the parent match.

        Returns the parent match id, or None for the final. Repeating the
        call writes the same values again.
        """
        match = self.get_match(tournament_id, match_id)
        update = advancement_update(match, winner_id)
        if update is None:
            return None
        next_match_id, fields = update
        self.store.update(self._path(tournament_id, 'matches'), next_match_id, fields)
        logger.debug("Advanced %s from match %s to match %s", winner_id, match_id, next_match_id)
        return next_match_id

    def get_bracket(self, tournament_id: str, category: Optional[str] = None) -> Dict:
        self.get_tournament(tournament_id)
        return get_bracket_display([m for m in self.get_matches(tournament_id, category) if _is_bracket_match(m)])

    def delete_bracket(self, tournament_id: str, category: Optional[str] = None) -> int:
        self.get_tournament(tournament_id)
        matches = [m for m in self.get_matches(tournament_id, category) if _is_bracket_match(m)]
        with WriteSequence('delete bracket') as sequence:
            for match in matches:
                self.store.delete(self._path(tournament_id, 'matches'), match['id'])
                sequence.step()
        logger.info("Deleted %d bracket matches in tournament %s", len(matches), tournament_id)
        return len(matches)

    # Results

    def record_match_result(self, tournament_id: str, match_id: str, sets: List[Dict],
                            winner_id: Optional[str] = None, is_withdrawal: bool = False) -> Dict:
        """
        Store a match score and move the winner on.

        Without a winner id the winner is taken from the sets. The first time a
        match of a club tournament is completed, the club ledger and profile
        XP of both players are credited.
        Changing the winner of a bracket match is refused once a later round
        has a result.
        """
        tournament = self.get_tournament(tournament_id)
        match = self.get_match(tournament_id, match_id)
        player1, player2 = match_slots(match)
        if not (player1.is_filled and player2.is_filled):
            raise ValidationError(f"Match {match_id} is still waiting for its players")
        if winner_id is None:
            winner_id = determine_winner(sets, player1.uid, player2.uid)
            if winner_id is None:
                raise ValidationError("The sets do not decide a winner")
        if winner_id not in (player1.uid, player2.uid):
            raise ValidationError(f"Winner {winner_id} is not a player of match {match_id}")
        loser_id = player2.uid if winner_id == player1.uid else player1.uid
        first_completion = match.get('status') != COMPLETED
        if not first_completion and winner_id != match.get('winner_id'):
            self._check_parent_open(tournament_id, match)

        with WriteSequence('record match result') as sequence:
            self.store.update(self._path(tournament_id, 'matches'), match_id, {
                'status': COMPLETED,
                'sets': sets or [],
                'score': format_match_score(sets),
                'winner_id': winner_id,
                'is_withdrawal': bool(is_withdrawal),
            })
            sequence.step()
            if first_completion and tournament.get('club_id'):
                sequence.step(self._credit_ledgers(tournament['club_id'], winner_id, loser_id, is_withdrawal))
            if match.get('next_match_id'):
                sequence.step(self._advance_and_cascade(tournament_id, match_id, winner_id))

        logger.info("Recorded result of match %s in tournament %s: winner %s", match_id, tournament_id, winner_id)
        return self.get_match(tournament_id, match_id)

    def _check_parent_open(self, tournament_id: str, match: Dict):
        """A winner can only be changed while the parent match is still undecided."""
        next_match_id = match.get('next_match_id')
        while next_match_id:
            parent = self.get_match(tournament_id, next_match_id)
            if parent.get('status') != COMPLETED:
                return
            if not parent.get('is_bye'):
                raise ConflictError(f"Match {next_match_id} already has a result; correct it first")
            # byes are re-resolved by the cascade, so look past them
            next_match_id = parent.get('next_match_id')

    def _credit_ledgers(self, club_id: str, winner_id: str, loser_id: str, is_withdrawal: bool) -> int:
        scoring = self._club_scoring(club_id)
        xp = self.config['xp']
        credits = [
            (winner_id, scoring.win, xp['win']),
            (loser_id, scoring.loser_points(is_withdrawal), xp['loss']),
        ]
        writes = 0
        for uid, points, xp_points in credits:
            if is_manual_uid(uid):
                continue
            if self.store.get(USERS, uid) is None:
                logger.warning("No user document for %s, ledger not credited", uid)
                continue
            self.store.update(USERS, uid, {
                f'clubs.{club_id}.points': Increment(points),
                'profile.points': Increment(xp_points),
                'profile.history_xp': Increment(xp_points),
            })
            writes += 1
        return writes

    # Rankings

    def recalculate_rankings(self, club_id: Optional[str] = None, job_id: Optional[str] = None) -> Dict[str, int]:
        """Rebuild a club's point ledger, or every profile's XP when no club is given."""
        if club_id:
            return self.rankings.recalculate_club_points(club_id, job_id)
        return self.rankings.recalculate_global_rankings(job_id)
