import time
from datetime import timedelta

import pytest

from voting_portal import create_app
from voting_portal.config import TestingConfig
from voting_portal.database.models import (
    Approval, AuthenticatorCredential, Contest, Nominee, Role, Voter, new_id, utcnow,
)
from voting_portal.extensions import db


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = float(int(time.time())) if start is None else start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def app(tmp_path):
    app = create_app(TestingConfig, SECURITY_LOG_DIR=str(tmp_path / 'security'))
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions['voting_portal'].shutdown()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def services(app):
    return app.extensions['voting_portal']


@pytest.fixture
def make_voter(app):
    def _make(role=Role.BASIC, with_authenticator=True, subject=None):
        voter = Voter(subject=subject or f'idp|{new_id()}', role=role, display_name='Test Voter')
        db.session.add(voter)
        db.session.flush()
        if with_authenticator:
            db.session.add(AuthenticatorCredential(voter_id=voter.id, credential_id=new_id(),
                                                   public_key='test-public-key'))
        db.session.commit()
        return voter
    return _make


@pytest.fixture
def make_contest(app):
    def _make(title='Best Picture', is_active=True, voting_start='open', voting_end='open'):
        now = utcnow()
        contest = Contest(
            title=title,
            is_active=is_active,
            voting_start=now - timedelta(days=1) if voting_start == 'open' else voting_start,
            voting_end=now + timedelta(days=1) if voting_end == 'open' else voting_end,
        )
        db.session.add(contest)
        db.session.commit()
        return contest
    return _make


@pytest.fixture
def make_nominee(app):
    def _make(contest, name='Nominee', approval=Approval.APPROVED, is_active=True, display_order=0):
        nominee = Nominee(contest_id=contest.id, name=name, approval=approval,
                          is_active=is_active, display_order=display_order)
        db.session.add(nominee)
        db.session.commit()
        return nominee
    return _make


@pytest.fixture
def operator(make_voter):
    return make_voter(role=Role.OPERATOR)


@pytest.fixture
def auth_headers(services):
    def _headers(voter, **extra):
        headers = {'Authorization': f'Bearer {services.sessions.mint_pair(voter).access}'}
        headers.update(extra)
        return headers
    return _headers
