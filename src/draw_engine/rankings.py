"""
Full recalculation of the point ledgers from the match history.

Two ledgers are rebuilt:
- club points, users/{uid}.clubs.{club_id}.points, written as absolute totals
- profile XP, users/{uid}.profile.points, moved by the difference between the
  XP the history is worth now and the XP last credited for it
  (profile.history_xp), so re-runs never count a match twice

Writes go out in chunks no larger than the store's batch limit. Each chunk is
checkpointed in ranking_jobs/{job_id}, so an interrupted job can be resumed by
running it again with the same job id.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .config import get_default_config
from .errors import NotFoundError, WriteSequence
from .models import COMPLETED, ScoringConfig, loser_of
from .store import DocumentStore, Increment

logger = logging.getLogger(__name__)

USERS = ('users',)
CLUBS = ('clubs',)
TOURNAMENTS = ('tournaments',)
RANKING_JOBS = ('ranking_jobs',)

JOB_RUNNING = 'running'
JOB_COMPLETED = 'completed'


def is_manual_uid(uid: Optional[str]) -> bool:
    """Manual (guest) entries have no user document to credit."""
    return not uid or uid.startswith('manual_')


def _played_matches(matches: Iterable[Dict]) -> Iterable[Dict]:
    """Completed matches with a winner and a loser; byes are not played."""
    for match in matches:
        if match.get('status') != COMPLETED or match.get('is_bye') or not match.get('winner_id'):
            continue
        loser_id = loser_of(match)
        if loser_id:
            yield match, match['winner_id'], loser_id


def club_point_totals(player_uids: Iterable[str], matches: Iterable[Dict], scoring: ScoringConfig) -> Dict[str, int]:
    """Absolute club points per uid; registered players without results get 0."""
    totals = {uid: 0 for uid in player_uids}
    for match, winner_id, loser_id in _played_matches(matches):
        totals[winner_id] = totals.get(winner_id, 0) + scoring.win
        totals[loser_id] = totals.get(loser_id, 0) + scoring.loser_points(match.get('is_withdrawal'))
    return totals


def history_xp_totals(matches: Iterable[Dict], xp: Dict) -> Dict[str, int]:
    """XP the match history is worth per uid."""
    totals = {}
    for _, winner_id, loser_id in _played_matches(matches):
        totals[winner_id] = totals.get(winner_id, 0) + xp['win']
        totals[loser_id] = totals.get(loser_id, 0) + xp['loss']
    return totals


def chunked(items: List, size: int) -> List[List]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class RankingRecalculator:
    def __init__(self, store: DocumentStore, config: Optional[Dict] = None):
        self.store = store
        self.config = config or get_default_config()

    @property
    def chunk_size(self) -> int:
        return min(self.config['max_batch_size'], self.store.max_batch_size)

    def recalculate_club_points(self, club_id: str, job_id: Optional[str] = None) -> Dict[str, int]:
        """Rebuild the club ledger from every completed match of the club's tournaments."""
        club = self.store.get(CLUBS, club_id)
        if club is None:
            raise NotFoundError(f"Club {club_id} not found")
        scoring = ScoringConfig.from_dict(club.get('scoring_config'), self.config['club_scoring'])

        tournament_ids = [t['id'] for t in self.store.query(TOURNAMENTS, club_id=club_id)]
        player_uids = set()
        matches = []
        for tournament_id in tournament_ids:
            player_uids.update(p.get('uid') for p in self.store.query(TOURNAMENTS + (tournament_id, 'players')))
            matches.extend(self.store.query(TOURNAMENTS + (tournament_id, 'matches'), status=COMPLETED))

        totals = club_point_totals((uid for uid in player_uids if uid), matches, scoring)
        known_users = {u['id'] for u in self.store.query(USERS)}
        writes = [
            (USERS, uid, {f'clubs.{club_id}.points': totals[uid]})
            for uid in sorted(totals)
            if not is_manual_uid(uid) and uid in known_users
        ]
        logger.info("Recalculating club %s points: %d tournaments, %d matches, %d users",
                    club_id, len(tournament_ids), len(matches), len(writes))
        self._run_chunks(job_id, 'club_points', club_id, writes)
        return {uid: totals[uid] for _, uid, _ in writes}

    def recalculate_global_rankings(self, job_id: Optional[str] = None) -> Dict[str, int]:
        """Bring every user's profile XP in line with the full match history."""
        matches = self.store.collection_group('matches', status=COMPLETED)
        totals = history_xp_totals(matches, self.config['xp'])
        users = {u['id']: u for u in self.store.query(USERS)}

        writes = []
        for uid in sorted(totals):
            if is_manual_uid(uid) or uid not in users:
                continue
            credited = (users[uid].get('profile') or {}).get('history_xp') or 0
            writes.append((USERS, uid, {
                'profile.points': Increment(totals[uid] - credited),
                'profile.history_xp': totals[uid],
            }))
        logger.info("Recalculating global rankings: %d matches, %d users", len(matches), len(writes))
        self._run_chunks(job_id, 'global_xp', None, writes)
        return {uid: totals[uid] for _, uid, _ in writes}

    def _run_chunks(self, job_id, kind, scope, writes):
        """Commit writes chunk by chunk, checkpointing after each one."""
        chunks = chunked(writes, self.chunk_size)
        job_id = job_id or uuid.uuid4().hex
        job = self.store.get(RANKING_JOBS, job_id)
        if job and job.get('status') == JOB_COMPLETED:
            logger.info("Ranking job %s already completed, nothing to do", job_id)
            return job_id
        start = job.get('next_chunk', 0) if job else 0
        if start:
            logger.info("Resuming ranking job %s at chunk %d of %d", job_id, start + 1, len(chunks))

        with WriteSequence(f"ranking job {job_id}") as sequence:
            self.store.set(RANKING_JOBS, job_id, {
                'kind': kind,
                'scope': scope,
                'status': JOB_RUNNING,
                'next_chunk': start,
                'chunk_count': len(chunks),
                'updated_at': datetime.now().isoformat(),
            })
            for index in range(start, len(chunks)):
                self.store.batch_update(chunks[index])
                sequence.step(len(chunks[index]))
                self.store.update(RANKING_JOBS, job_id, {
                    'next_chunk': index + 1,
                    'updated_at': datetime.now().isoformat(),
                })
                logger.debug("Ranking job %s committed chunk %d/%d", job_id, index + 1, len(chunks))
            self.store.update(RANKING_JOBS, job_id, {'status': JOB_COMPLETED})
        return job_id
