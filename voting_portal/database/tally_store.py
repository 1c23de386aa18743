# voting_portal/database/tally_store.py

"""Durable records: votes, biases, audit entries, plus the lookups the engines need.

Every method runs inside the caller's app context on `db.session`. Failures
roll the session back before propagating so the next call starts clean. A
unique-constraint violation on a vote insert is reported as ALREADY_VOTED,
which is the authoritative duplicate check.
"""

from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from voting_portal.database.models import (
    AuditEntry, Bias, BiasStatus, Contest, Nominee, Voter, Vote, utcnow,
)
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.extensions import db


@contextmanager
def _rollback_on_error():
    try:
        yield
    except SQLAlchemyError:
        db.session.rollback()
        raise


class TallyStore:

    # --- lookups ---------------------------------------------------------

    def ping(self) -> bool:
        with _rollback_on_error():
            db.session.execute(select(1))
        return True

    def get_voter(self, voter_id: str) -> Optional[Voter]:
        with _rollback_on_error():
            return db.session.get(Voter, voter_id)

    def get_voter_by_subject(self, subject: str) -> Optional[Voter]:
        with _rollback_on_error():
            return db.session.execute(
                select(Voter).filter_by(subject=subject)
            ).scalar_one_or_none()

    def get_contest(self, contest_id: str) -> Optional[Contest]:
        with _rollback_on_error():
            return db.session.get(Contest, contest_id)

    def get_nominee(self, nominee_id: str) -> Optional[Nominee]:
        with _rollback_on_error():
            return db.session.get(Nominee, nominee_id)

    def active_contests(self) -> List[Contest]:
        with _rollback_on_error():
            return list(db.session.execute(
                select(Contest).filter_by(is_active=True).order_by(Contest.created_at, Contest.id)
            ).scalars())

    def contest_nominees(self, contest_id: str) -> List[Nominee]:
        with _rollback_on_error():
            return list(db.session.execute(
                select(Nominee).filter_by(contest_id=contest_id)
                .order_by(Nominee.display_order, Nominee.id)
            ).scalars())

    # --- voters ----------------------------------------------------------

    def create_voter(self, subject: str, email: str = None, display_name: str = None) -> Voter:
        voter = Voter(subject=subject, email=email, display_name=display_name)
        with _rollback_on_error():
            db.session.add(voter)
            db.session.commit()
        return voter

    def get_or_create_voter(self, subject: str, email: str = None, display_name: str = None) -> Voter:
        """Voters are created on their first identity-provider login."""
        voter = self.get_voter_by_subject(subject)
        if voter is not None:
            return voter
        try:
            return self.create_voter(subject, email, display_name)
        except IntegrityError:
            # a concurrent first login created the row
            return self.get_voter_by_subject(subject)

    def set_role(self, voter: Voter, role, operator_id: str) -> Voter:
        previous = voter.role
        with _rollback_on_error():
            voter.role = role
            self._audit('voter.role_changed', operator_id, 'voter', voter.id,
                        {'from': previous.value, 'to': role.value})
            db.session.commit()
        return voter

    # --- votes -----------------------------------------------------------

    def find_vote(self, voter_id: str, contest_id: str) -> Optional[Vote]:
        with _rollback_on_error():
            return db.session.execute(
                select(Vote).filter_by(voter_id=voter_id, contest_id=contest_id)
            ).scalar_one_or_none()

    def get_vote(self, vote_id: str) -> Optional[Vote]:
        with _rollback_on_error():
            return db.session.get(Vote, vote_id)

    def voter_votes(self, voter_id: str) -> List[Vote]:
        with _rollback_on_error():
            return list(db.session.execute(
                select(Vote).filter_by(voter_id=voter_id).order_by(Vote.cast_at.desc())
            ).scalars())

    def insert_vote(self, voter_id: str, contest_id: str, nominee_id: str,
                    biometric_verified: bool, origin_hash: Optional[str]) -> Vote:
        vote = Vote(voter_id=voter_id, contest_id=contest_id, nominee_id=nominee_id,
                    biometric_verified=biometric_verified, origin_hash=origin_hash,
                    cast_at=utcnow())
        try:
            db.session.add(vote)
            db.session.commit()
        except IntegrityError as error:
            db.session.rollback()
            # the unique (voter, contest) constraint is the authoritative duplicate check
            raise PortalError(ErrorCode.ALREADY_VOTED) from error
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return vote

    def delete_vote(self, vote: Vote, operator_id: str, reason: str) -> None:
        with _rollback_on_error():
            self._audit('vote.retracted', operator_id, 'vote', vote.id, {
                'voter_id': vote.voter_id,
                'contest_id': vote.contest_id,
                'nominee_id': vote.nominee_id,
                'cast_at': vote.cast_at.isoformat(),
                'reason': reason,
            })
            db.session.delete(vote)
            db.session.commit()

    def grouped_counts(self, contest_id: str) -> Dict[str, int]:
        with _rollback_on_error():
            rows = db.session.execute(
                select(Vote.nominee_id, func.count(Vote.id))
                .where(Vote.contest_id == contest_id)
                .group_by(Vote.nominee_id)
            ).all()
        return {nominee_id: int(count) for nominee_id, count in rows}

    # --- biases ----------------------------------------------------------

    def get_bias(self, bias_id: str) -> Optional[Bias]:
        with _rollback_on_error():
            return db.session.get(Bias, bias_id)

    def active_bias(self, contest_id: str, nominee_id: str) -> Optional[Bias]:
        with _rollback_on_error():
            return db.session.execute(
                select(Bias).filter_by(contest_id=contest_id, nominee_id=nominee_id,
                                       status=BiasStatus.ACTIVE)
            ).scalar_one_or_none()

    def active_bias_amounts(self, contest_id: str) -> Dict[str, int]:
        with _rollback_on_error():
            rows = db.session.execute(
                select(Bias.nominee_id, Bias.amount)
                .filter_by(contest_id=contest_id, status=BiasStatus.ACTIVE)
            ).all()
        return {nominee_id: int(amount) for nominee_id, amount in rows}

    def list_biases(self, contest_id: str = None, include_inactive: bool = False) -> List[Bias]:
        query = select(Bias)
        if contest_id is not None:
            query = query.filter_by(contest_id=contest_id)
        if not include_inactive:
            query = query.filter_by(status=BiasStatus.ACTIVE)
        with _rollback_on_error():
            return list(db.session.execute(query.order_by(Bias.applied_at.desc())).scalars())

    def upsert_bias(self, contest_id: str, nominee_id: str, amount: int, reason: str,
                    operator_id: str) -> Bias:
        """Update the active bias for the pair in place, or insert one.

        Raises IntegrityError when a concurrent insert won the partial unique
        index; the caller decides whether to retry.
        """
        try:
            bias = self.active_bias(contest_id, nominee_id)
            now = utcnow()
            if bias is not None:
                previous = {'amount': bias.amount, 'reason': bias.reason}
                bias.amount = amount
                bias.reason = reason
                bias.applied_by = operator_id
                bias.updated_at = now
                db.session.flush()
                self._audit('bias.updated', operator_id, 'bias', bias.id,
                            {'previous': previous, 'amount': amount, 'reason': reason})
            else:
                bias = Bias(contest_id=contest_id, nominee_id=nominee_id, amount=amount,
                            reason=reason, applied_by=operator_id, applied_at=now,
                            updated_at=now, status=BiasStatus.ACTIVE)
                db.session.add(bias)
                db.session.flush()
                self._audit('bias.applied', operator_id, 'bias', bias.id,
                            {'contest_id': contest_id, 'nominee_id': nominee_id,
                             'amount': amount, 'reason': reason})
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return bias

    def deactivate_bias(self, bias: Bias, operator_id: str, reason: str) -> Bias:
        with _rollback_on_error():
            bias.status = BiasStatus.INACTIVE
            bias.deactivated_by = operator_id
            bias.deactivated_at = utcnow()
            bias.deactivation_reason = reason
            self._audit('bias.deactivated', operator_id, 'bias', bias.id,
                        {'amount': bias.amount, 'reason': reason})
            db.session.commit()
        return bias

    # --- audit -----------------------------------------------------------

    def _audit(self, action, actor_id, target_type, target_id, details=None):
        # joins the caller's transaction
        db.session.add(AuditEntry(action=action, actor_id=actor_id, target_type=target_type,
                                  target_id=target_id, details=details))

    def audit_entries(self, target_id: str = None) -> List[AuditEntry]:
        query = select(AuditEntry)
        if target_id is not None:
            query = query.filter_by(target_id=target_id)
        with _rollback_on_error():
            return list(db.session.execute(query.order_by(AuditEntry.created_at)).scalars())
