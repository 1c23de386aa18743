# voting_portal/voting/bias.py

import logging
from typing import Dict, List

from sqlalchemy.exc import IntegrityError

from voting_portal.authentication.rbac import Permission, RBACService
from voting_portal.database.models import Bias
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.security.input_validator import InputValidator

logger = logging.getLogger(__name__)


class BiasService:
    """Operator adjustments layered over the stored tally.

    At most one active bias exists per (contest, nominee); deactivated rows
    stay in the table for audit. Every change clears the contest's cached
    tally.
    """

    def __init__(self, store, envelope, votes, rbac: RBACService = None,
                 validator: InputValidator = None):
        self.store = store
        self.envelope = envelope
        self.votes = votes
        self.rbac = rbac or RBACService()
        self.validator = validator or InputValidator()

    def apply_bias(self, contest_id: str, nominee_id: str, amount, reason, operator) -> Bias:
        self.rbac.require(operator.role, Permission.MANAGE_BIASES)
        amount = self.validator.validate_bias_amount(amount)
        reason = self.validator.validate_reason(reason)

        def upsert():
            if self.store.get_contest(contest_id) is None:
                raise PortalError(ErrorCode.NOT_FOUND, "Contest not found")
            nominee = self.store.get_nominee(nominee_id)
            if nominee is None or nominee.contest_id != contest_id:
                raise PortalError(ErrorCode.BAD_TARGET)
            try:
                return self.store.upsert_bias(contest_id, nominee_id, amount, reason, operator.id)
            except IntegrityError:
                # a concurrent insert won the active-pair index; update that row instead
                logger.info("Concurrent bias insert for %s/%s, retrying as update", contest_id, nominee_id)
            try:
                return self.store.upsert_bias(contest_id, nominee_id, amount, reason, operator.id)
            except IntegrityError as error:
                raise PortalError(ErrorCode.DUPLICATE_ENTRY, "An active bias already exists") from error

        bias = self.envelope.store(upsert)
        logger.warning("Bias %s set to %d on contest %s nominee %s by %s",
                       bias.id, amount, contest_id, nominee_id, operator.id)
        self.votes.clear_tally_cache(contest_id)
        return bias

    def deactivate_bias(self, bias_id: str, operator, reason) -> Bias:
        self.rbac.require(operator.role, Permission.MANAGE_BIASES)
        reason = self.validator.validate_reason(reason)

        def deactivate():
            bias = self.store.get_bias(bias_id)
            if bias is None:
                raise PortalError(ErrorCode.NOT_FOUND, "Bias not found")
            if not bias.is_active:
                return bias, False
            return self.store.deactivate_bias(bias, operator.id, reason), True

        bias, changed = self.envelope.store(deactivate)
        if changed:
            logger.warning("Bias %s deactivated by %s", bias_id, operator.id)
            self.votes.clear_tally_cache(bias.contest_id)
        return bias

    def observable_tally(self, contest_id: str) -> Dict[str, int]:
        """Grouped vote counts plus active bias amounts, read straight from the store."""
        def compute():
            if self.store.get_contest(contest_id) is None:
                raise PortalError(ErrorCode.NOT_FOUND, "Contest not found")
            tally = dict(self.store.grouped_counts(contest_id))
            for nominee_id, amount in self.store.active_bias_amounts(contest_id).items():
                tally[nominee_id] = tally.get(nominee_id, 0) + amount
            return tally
        return self.envelope.store(compute)

    def list_biases(self, operator, contest_id: str = None, include_inactive: bool = False) -> List[Bias]:
        self.rbac.require(operator.role, Permission.MANAGE_BIASES)
        return self.envelope.store(lambda: self.store.list_biases(contest_id, include_inactive))
