# voting_portal/database/models.py

import uuid
from datetime import datetime, timezone
from enum import Enum

from voting_portal.extensions import db


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    # naive UTC so values compare equal after a round trip through SQLite
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Role(Enum):
    BASIC = "basic"
    CURATOR = "curator"
    OPERATOR = "operator"

    @property
    def rank(self) -> int:
        return _ROLE_ORDER.index(self)

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank


_ROLE_ORDER = [Role.BASIC, Role.CURATOR, Role.OPERATOR]


class Approval(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BiasStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Voter(db.Model):
    __tablename__ = 'voters'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    subject = db.Column(db.String(255), unique=True, nullable=False)  # identity-provider subject
    email = db.Column(db.String(254), nullable=True)
    display_name = db.Column(db.String(100), nullable=True)
    role = db.Column(db.Enum(Role, values_callable=_enum_values, name='voter_role'),
                     nullable=False, default=Role.BASIC)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    authenticators = db.relationship('AuthenticatorCredential', backref='voter', lazy=True)
    votes = db.relationship('Vote', backref='voter', lazy=True)

    @property
    def has_authenticator(self) -> bool:
        return len(self.authenticators) > 0

    def __repr__(self):
        return f'<Voter {self.id} {self.role.value}>'


class AuthenticatorCredential(db.Model):
    """A registered platform-authenticator (biometric) credential."""
    __tablename__ = 'authenticator_credentials'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    voter_id = db.Column(db.String(32), db.ForeignKey('voters.id'), nullable=False, index=True)
    credential_id = db.Column(db.String(512), unique=True, nullable=False)
    public_key = db.Column(db.Text, nullable=False)
    sign_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class Contest(db.Model):
    __tablename__ = 'contests'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    title = db.Column(db.String(150), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    nomination_start = db.Column(db.DateTime, nullable=True)
    nomination_end = db.Column(db.DateTime, nullable=True)
    voting_start = db.Column(db.DateTime, nullable=True)
    voting_end = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    nominees = db.relationship('Nominee', backref='contest', lazy=True,
                               order_by='Nominee.display_order')

    __table_args__ = (
        db.CheckConstraint(
            'voting_start IS NULL OR voting_end IS NULL OR voting_start < voting_end',
            name='ck_contest_voting_window'),
    )

    def voting_open(self, now: datetime) -> bool:
        """Active and inside the voting window; a missing bound is unbounded."""
        if not self.is_active:
            return False
        if self.voting_start is not None and now < self.voting_start:
            return False
        if self.voting_end is not None and now > self.voting_end:
            return False
        return True


class Nominee(db.Model):
    __tablename__ = 'nominees'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    contest_id = db.Column(db.String(32), db.ForeignKey('contests.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    approval = db.Column(db.Enum(Approval, values_callable=_enum_values, name='nominee_approval'),
                         nullable=False, default=Approval.PENDING)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        # target of the (contest_id, nominee_id) reference held by votes
        db.UniqueConstraint('contest_id', 'id', name='uq_nominee_contest_pair'),
    )

    @property
    def eligible(self) -> bool:
        return self.is_active and self.approval is Approval.APPROVED


class Vote(db.Model):
    __tablename__ = 'votes'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    voter_id = db.Column(db.String(32), db.ForeignKey('voters.id'), nullable=False)
    contest_id = db.Column(db.String(32), db.ForeignKey('contests.id'), nullable=False)
    nominee_id = db.Column(db.String(32), nullable=False)
    cast_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    biometric_verified = db.Column(db.Boolean, nullable=False, default=False)
    origin_hash = db.Column(db.String(64), nullable=True)  # salted SHA-256 of the network origin

    __table_args__ = (
        db.UniqueConstraint('voter_id', 'contest_id', name='uq_vote_voter_contest'),
        db.ForeignKeyConstraint(['contest_id', 'nominee_id'], ['nominees.contest_id', 'nominees.id'],
                                name='fk_vote_nominee_in_contest'),
        db.Index('ix_votes_contest_nominee', 'contest_id', 'nominee_id'),
    )

    def summary(self) -> dict:
        return {
            'vote_id': self.id,
            'contest_id': self.contest_id,
            'nominee_id': self.nominee_id,
            'cast_at': self.cast_at.isoformat(),
            'biometric_verified': self.biometric_verified,
        }

    def __repr__(self):
        return f'<Vote {self.id} by Voter {self.voter_id}>'


class Bias(db.Model):
    """Additive per-nominee adjustment to the observable tally."""
    __tablename__ = 'biases'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    contest_id = db.Column(db.String(32), db.ForeignKey('contests.id'), nullable=False)
    nominee_id = db.Column(db.String(32), db.ForeignKey('nominees.id'), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(500), nullable=False)
    applied_by = db.Column(db.String(32), db.ForeignKey('voters.id'), nullable=False)
    applied_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    status = db.Column(db.Enum(BiasStatus, values_callable=_enum_values, name='bias_status'),
                       nullable=False, default=BiasStatus.ACTIVE)
    deactivated_by = db.Column(db.String(32), db.ForeignKey('voters.id'), nullable=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)
    deactivation_reason = db.Column(db.String(500), nullable=True)

    __table_args__ = (
        # at most one active bias per (contest, nominee); inactive rows are kept
        db.Index('uq_bias_active_pair', 'contest_id', 'nominee_id', unique=True,
                 sqlite_where=db.text("status = 'active'"),
                 postgresql_where=db.text("status = 'active'")),
        db.Index('ix_biases_contest_status', 'contest_id', 'status'),
        db.CheckConstraint('amount >= 0 AND amount <= 10000', name='ck_bias_amount_range'),
    )

    @property
    def is_active(self) -> bool:
        return self.status is BiasStatus.ACTIVE

    def audit_view(self) -> dict:
        return {
            'bias_id': self.id,
            'contest_id': self.contest_id,
            'nominee_id': self.nominee_id,
            'amount': self.amount,
            'reason': self.reason,
            'applied_by': self.applied_by,
            'applied_at': self.applied_at.isoformat() if self.applied_at else None,
            'status': self.status.value,
            'deactivated_by': self.deactivated_by,
            'deactivated_at': self.deactivated_at.isoformat() if self.deactivated_at else None,
            'deactivation_reason': self.deactivation_reason,
        }


class AuditEntry(db.Model):
    __tablename__ = 'audit_entries'
    id = db.Column(db.String(32), primary_key=True, default=new_id)
    action = db.Column(db.String(64), nullable=False, index=True)
    actor_id = db.Column(db.String(32), nullable=False)
    target_type = db.Column(db.String(32), nullable=False)
    target_id = db.Column(db.String(32), nullable=False)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def view(self) -> dict:
        return {
            'audit_id': self.id,
            'action': self.action,
            'actor_id': self.actor_id,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'details': self.details,
            'created_at': self.created_at.isoformat(),
        }
