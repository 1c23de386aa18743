# voting_portal/operations/reconciler.py

# Periodic repair of the tally cache from the tally store (store wins)

import logging
import threading
from typing import Dict, List, Optional

from voting_portal.database.models import utcnow
from voting_portal.errors import ErrorCode, PortalError

logger = logging.getLogger(__name__)


class TallyReconciler:
    def __init__(self, votes, envelope, repair_hints):
        self.votes = votes
        self.envelope = envelope
        self.repair_hints = repair_hints
        self._run_lock = threading.Lock()

        # Metrics tracking
        self.metrics = {
            "runs": 0,
            "contests_checked": 0,
            "divergences_repaired": 0,
            "failures": 0,
            "last_run": None,
        }

    def _contest_ids(self) -> List[str]:
        active = [contest.id for contest in self.envelope.store(self.votes.store.active_contests)]
        hinted = [contest_id for contest_id in self.repair_hints.pending() if contest_id not in active]
        return active + hinted

    def _read_cache(self, contest_id):
        return self.envelope.cache(lambda: self.votes.cache.read(contest_id))

    def verify_consistency(self, contest_id: str) -> Dict:
        """Read-only comparison of the cached and stored tally for one contest."""
        stored = self.envelope.store(lambda: self.votes.store_snapshot(contest_id))
        cached = self._read_cache(contest_id)
        report = {
            "contest_id": contest_id,
            "cached": cached is not None,
            "consistent": cached is None or cached == stored,
            "stale_hint": contest_id in self.repair_hints,
            "differences": [],
        }
        if cached is not None and cached != stored:
            nominees = sorted(set(stored.counts) | set(cached.counts) | set(stored.biases) | set(cached.biases))
            for nominee_id in nominees:
                store_view = (stored.counts.get(nominee_id), stored.biases.get(nominee_id, 0))
                cache_view = (cached.counts.get(nominee_id), cached.biases.get(nominee_id, 0))
                if store_view != cache_view:
                    report["differences"].append({
                        "nominee_id": nominee_id,
                        "store": {"count": store_view[0], "bias": store_view[1]},
                        "cache": {"count": cache_view[0], "bias": cache_view[1]},
                    })
        return report

    def reconcile_contest(self, contest_id: str, force: bool = False) -> str:
        stored = self.envelope.store(lambda: self.votes.store_snapshot(contest_id))
        if not force and contest_id not in self.repair_hints:
            cached = self._read_cache(contest_id)
            # an absent hash is seeded on the next read, nothing to repair
            if cached is None:
                return "not_cached"
            if cached == stored:
                return "consistent"
        self.envelope.cache(lambda: self.votes.cache.rewrite(contest_id, stored))
        self.repair_hints.discard(contest_id)
        return "rebuilt" if force else "repaired"

    def reconcile(self, force: bool = False) -> Dict:
        """Compare every active (and hinted) contest; rewrite divergent hashes.

        With `force`, every contest is rewritten regardless of divergence.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.info("Reconciliation already running, skipping")
            return {"skipped": True, "contests": {}}
        try:
            self.metrics["runs"] += 1
            results = {}
            if self.envelope.cache_degraded():
                logger.warning("Tally cache degraded, reconciliation deferred")
                self.metrics["failures"] += 1
                return {"skipped": True, "reason": "cache_degraded", "contests": results}

            for contest_id in self._contest_ids():
                self.metrics["contests_checked"] += 1
                try:
                    outcome = self.reconcile_contest(contest_id, force=force)
                except PortalError as error:
                    if error.code is ErrorCode.NOT_FOUND:
                        self.repair_hints.discard(contest_id)
                        outcome = "missing"
                    else:
                        self.metrics["failures"] += 1
                        logger.error("Reconciliation of contest %s failed: %s", contest_id, error.code.value)
                        outcome = "failed"
                if outcome in ("repaired", "rebuilt"):
                    self.metrics["divergences_repaired"] += 1
                    if outcome == "repaired":
                        logger.warning("Tally cache divergence repaired for contest %s", contest_id)
                results[contest_id] = outcome
            return {"skipped": False, "force": force, "contests": results}
        finally:
            self.metrics["last_run"] = utcnow().isoformat()
            self._run_lock.release()


class ReconcilerWorker:
    """Daemon thread running `reconcile()` every `interval` seconds inside an app context."""

    def __init__(self, app, reconciler: TallyReconciler, interval: float = 300):
        self.app = app
        self.reconciler = reconciler
        self.interval = interval
        self._stop = threading.Event()
        self.worker: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.worker = threading.Thread(target=self._run, name="tally-reconciler")
        self.worker.daemon = True
        self.worker.start()
        logger.info("Tally reconciler started (interval %ss)", self.interval)

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                with self.app.app_context():
                    self.reconciler.reconcile()
            except Exception as e:
                self.reconciler.metrics["failures"] += 1
                logger.exception("Error in reconciliation run: %s", e)

    def shutdown(self, timeout: float = 5.0):
        self._stop.set()
        if self.worker is not None:
            self.worker.join(timeout)
        logger.info("Tally reconciler stopped")
