# voting_portal/voting/vote_engine.py

"""Vote submission and tally reads.

Submission checks run in a fixed order (role, biometric, window, target,
prior vote) so that a cheaper rejection never reveals later state. The
unique (voter, contest) constraint in the tally store has the final word on
duplicates; the counter cache is updated afterwards on a best-effort basis.
"""

import logging
from typing import Callable, List, Optional, Tuple

from voting_portal.authentication.rbac import Permission, RBACService
from voting_portal.cache.counter_cache import CachedTally, CounterCache, RepairHints
from voting_portal.database.models import Vote, utcnow
from voting_portal.database.tally_store import TallyStore
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.resilience.envelope import ResilienceEnvelope

logger = logging.getLogger(__name__)


class VoteEngine:
    def __init__(self, store: TallyStore, cache: CounterCache, envelope: ResilienceEnvelope,
                 repair_hints: RepairHints = None, rbac: RBACService = None,
                 biometric_enforced: bool = True, clock: Callable = utcnow):
        self.store = store
        self.cache = cache
        self.envelope = envelope
        self.repair_hints = repair_hints if repair_hints is not None else RepairHints()
        self.rbac = rbac or RBACService()
        self.biometric_enforced = biometric_enforced
        self._clock = clock

    # --- submission ------------------------------------------------------

    def submit_vote(self, voter, contest_id: str, nominee_id: str,
                    biometric_verified: bool, origin_hash: Optional[str] = None) -> Vote:
        # 1. role
        if not self.rbac.has_permission(voter.role, Permission.VOTE):
            raise PortalError(ErrorCode.FORBIDDEN)

        # 2. biometric
        if not biometric_verified and self.biometric_enforced:
            if not self.envelope.store(lambda: voter.has_authenticator):
                raise PortalError(ErrorCode.BIOMETRIC_SETUP_REQUIRED)
            raise PortalError(ErrorCode.BIOMETRIC_REQUIRED)

        def persist():
            # 3. window
            contest = self.store.get_contest(contest_id)
            if contest is None or not contest.voting_open(self._clock()):
                raise PortalError(ErrorCode.WINDOW_CLOSED)
            # 4. target
            nominee = self.store.get_nominee(nominee_id)
            if nominee is None or nominee.contest_id != contest_id or not nominee.eligible:
                raise PortalError(ErrorCode.BAD_TARGET)
            # 5. prior vote
            if self.store.find_vote(voter.id, contest_id) is not None:
                raise PortalError(ErrorCode.ALREADY_VOTED)
            # 6. insert; the unique constraint settles races with step 5
            return self.store.insert_vote(voter.id, contest_id, nominee_id,
                                          bool(biometric_verified), origin_hash)

        vote = self.envelope.store(persist)
        logger.info("Vote %s recorded for contest %s", vote.id, contest_id)

        # 7. write-through
        self._increment(contest_id, nominee_id)
        return vote

    def _increment(self, contest_id, nominee_id):
        if self.envelope.cache_degraded():
            self.repair_hints.add(contest_id, "(cache degraded at vote time)")
            return
        try:
            self.envelope.cache(lambda: self.cache.increment(contest_id, nominee_id))
        except PortalError as error:
            self.repair_hints.add(contest_id, f"(increment failed: {error.code.value})")

    # --- reads -----------------------------------------------------------

    def store_snapshot(self, contest_id: str) -> CachedTally:
        """Tally as the store sees it: every eligible nominee plus any holding votes or a bias."""
        if self.store.get_contest(contest_id) is None:
            raise PortalError(ErrorCode.NOT_FOUND, "Contest not found")
        counts = self.store.grouped_counts(contest_id)
        biases = self.store.active_bias_amounts(contest_id)
        snapshot = CachedTally()
        for nominee in self.store.contest_nominees(contest_id):
            if nominee.eligible or nominee.id in counts or nominee.id in biases:
                snapshot.counts[nominee.id] = counts.get(nominee.id, 0)
                snapshot.orders[nominee.id] = nominee.display_order
                if nominee.id in biases:
                    snapshot.biases[nominee.id] = biases[nominee.id]
        return snapshot

    def _read_cache(self, contest_id) -> Optional[CachedTally]:
        if self.envelope.cache_degraded() or contest_id in self.repair_hints:
            return None
        try:
            return self.envelope.cache(lambda: self.cache.read(contest_id))
        except PortalError as error:
            logger.warning("Tally cache read failed for %s: %s", contest_id, error.code.value)
            return None

    def seed_cache(self, contest_id: str, snapshot: CachedTally) -> bool:
        if self.envelope.cache_degraded():
            return False
        try:
            self.envelope.cache(lambda: self.cache.rewrite(contest_id, snapshot))
        except PortalError as error:
            logger.warning("Could not seed tally cache for %s: %s", contest_id, error.code.value)
            return False
        self.repair_hints.discard(contest_id)
        return True

    def get_tally(self, contest_id: str) -> List[Tuple[str, int]]:
        cached = self._read_cache(contest_id)
        if cached is not None:
            tally = cached.observable()
            self.envelope.last_known_good.remember(contest_id, tally)
            return tally

        snapshot = self.envelope.store(lambda: self.store_snapshot(contest_id), fallback=lambda: None)
        if snapshot is None:
            return self.envelope.tally_fallback(contest_id)()
        self.seed_cache(contest_id, snapshot)
        tally = snapshot.observable()
        self.envelope.last_known_good.remember(contest_id, tally)
        return tally

    def clear_tally_cache(self, contest_id: str) -> None:
        try:
            self.envelope.cache(lambda: self.cache.clear(contest_id))
        except PortalError as error:
            # keep readers off the stale hash until it is rewritten
            self.repair_hints.add(contest_id, f"(clear failed: {error.code.value})")

    def check_voted(self, voter, contest_id: str) -> Optional[Vote]:
        def lookup():
            if self.store.get_contest(contest_id) is None:
                raise PortalError(ErrorCode.NOT_FOUND, "Contest not found")
            return self.store.find_vote(voter.id, contest_id)
        return self.envelope.store(lookup)

    def voting_history(self, voter) -> List[Vote]:
        return self.envelope.store(lambda: self.store.voter_votes(voter.id))

    def list_results(self) -> List[dict]:
        contests = self.envelope.store(self.store.active_contests)
        return [
            {
                'contest_id': contest.id,
                'title': contest.title,
                'tally': self.get_tally(contest.id),
            }
            for contest in contests
        ]

    # --- administration --------------------------------------------------

    def retract_vote(self, operator, vote_id: str, reason: str) -> dict:
        """Operator-only removal of a vote; audited in the same transaction.

        Returns the summary of the removed vote.
        """
        self.rbac.require(operator.role, Permission.RETRACT_VOTES)

        def remove():
            vote = self.store.get_vote(vote_id)
            if vote is None:
                raise PortalError(ErrorCode.NOT_FOUND, "Vote not found")
            summary = vote.summary()
            self.store.delete_vote(vote, operator.id, reason)
            return summary

        summary = self.envelope.store(remove)
        logger.warning("Vote %s retracted by operator %s", vote_id, operator.id)
        self.clear_tally_cache(summary['contest_id'])
        return summary
