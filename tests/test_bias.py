import pytest
from sqlalchemy.exc import IntegrityError

from voting_portal.database.models import Bias, BiasStatus
from voting_portal.errors import ErrorCode, PortalError
from voting_portal.extensions import db


@pytest.fixture
def ballot(make_contest, make_nominee):
    contest = make_contest()
    return contest, make_nominee(contest, "First", display_order=0), make_nominee(contest, "Second", display_order=1)


def active_biases(contest_id):
    return db.session.query(Bias).filter_by(contest_id=contest_id, status=BiasStatus.ACTIVE).all()


def test_bias_is_added_to_observable_tally(services, operator, make_voter, ballot):
    contest, first, second = ballot
    for _ in range(3):
        services.votes.submit_vote(make_voter(), contest.id, first.id, True)
    services.biases.apply_bias(contest.id, second.id, 5, "Jury award", operator)

    assert services.biases.observable_tally(contest.id) == {first.id: 3, second.id: 5}
    assert services.votes.get_tally(contest.id) == [(second.id, 5), (first.id, 3)]


def test_reapplying_updates_the_active_bias(services, operator, ballot):
    contest, first, _ = ballot
    bias = services.biases.apply_bias(contest.id, first.id, 2, "Initial", operator)
    again = services.biases.apply_bias(contest.id, first.id, 7, "Corrected", operator)
    assert again.id == bias.id
    assert [b.amount for b in active_biases(contest.id)] == [7]
    actions = [entry.action for entry in services.tally_store.audit_entries(target_id=bias.id)]
    assert sorted(actions) == ["bias.applied", "bias.updated"]


def test_bias_change_clears_cached_tally(services, operator, ballot):
    contest, first, _ = ballot
    services.votes.get_tally(contest.id)
    assert services.counter_cache.read(contest.id) is not None
    services.biases.apply_bias(contest.id, first.id, 1, "Tie breaker", operator)
    assert services.counter_cache.read(contest.id) is None


def test_deactivate_keeps_row_for_audit(services, operator, ballot):
    contest, first, _ = ballot
    bias = services.biases.apply_bias(contest.id, first.id, 3, "Jury award", operator)
    services.biases.deactivate_bias(bias.id, operator, "Appeal upheld")

    assert active_biases(contest.id) == []
    row = db.session.get(Bias, bias.id)
    assert row.status is BiasStatus.INACTIVE
    assert row.deactivation_reason == "Appeal upheld"
    assert services.biases.observable_tally(contest.id) == {}

    listed = services.biases.list_biases(operator, contest.id, include_inactive=True)
    assert [b.id for b in listed] == [bias.id]
    assert services.biases.list_biases(operator, contest.id) == []


def test_deactivating_twice_is_a_no_op(services, operator, ballot):
    contest, first, _ = ballot
    bias = services.biases.apply_bias(contest.id, first.id, 3, "Jury award", operator)
    services.biases.deactivate_bias(bias.id, operator, "Appeal upheld")
    again = services.biases.deactivate_bias(bias.id, operator, "Second attempt")
    assert again.deactivation_reason == "Appeal upheld"
    actions = [entry.action for entry in services.tally_store.audit_entries(target_id=bias.id)]
    assert actions.count("bias.deactivated") == 1


def test_new_bias_after_deactivation(services, operator, ballot):
    contest, first, _ = ballot
    old = services.biases.apply_bias(contest.id, first.id, 3, "Jury award", operator)
    services.biases.deactivate_bias(old.id, operator, "Appeal upheld")
    new = services.biases.apply_bias(contest.id, first.id, 1, "Re-evaluated", operator)
    assert new.id != old.id
    assert services.biases.observable_tally(contest.id) == {first.id: 1}


def test_one_active_bias_per_pair_is_enforced_by_the_store(services, operator, ballot):
    contest, first, _ = ballot
    services.biases.apply_bias(contest.id, first.id, 3, "Jury award", operator)
    db.session.add(Bias(contest_id=contest.id, nominee_id=first.id, amount=1, reason="dup",
                        applied_by=operator.id, status=BiasStatus.ACTIVE))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_persistent_conflict_is_duplicate_entry(services, operator, ballot, monkeypatch):
    contest, first, _ = ballot
    calls = []

    def conflicting(*args):
        calls.append(args)
        raise IntegrityError("INSERT", {}, Exception("uq_bias_active_pair"))

    monkeypatch.setattr(services.tally_store, "upsert_bias", conflicting)
    with pytest.raises(PortalError) as excinfo:
        services.biases.apply_bias(contest.id, first.id, 3, "Jury award", operator)
    assert excinfo.value.code is ErrorCode.DUPLICATE_ENTRY
    assert len(calls) == 2


@pytest.mark.parametrize("amount", [-1, 10001, 2.5, "3", True, None])
def test_amount_is_validated(services, operator, ballot, amount):
    contest, first, _ = ballot
    with pytest.raises(PortalError) as excinfo:
        services.biases.apply_bias(contest.id, first.id, amount, "Jury award", operator)
    assert excinfo.value.code is ErrorCode.BAD_INPUT


def test_reason_is_required(services, operator, ballot):
    contest, first, _ = ballot
    with pytest.raises(PortalError) as excinfo:
        services.biases.apply_bias(contest.id, first.id, 1, "   ", operator)
    assert excinfo.value.code is ErrorCode.BAD_INPUT


def test_basic_voter_cannot_bias(services, make_voter, ballot):
    contest, first, _ = ballot
    with pytest.raises(PortalError) as excinfo:
        services.biases.apply_bias(contest.id, first.id, 1, "Please", make_voter())
    assert excinfo.value.code is ErrorCode.FORBIDDEN


def test_bias_targets_are_checked(services, operator, make_contest, make_nominee, ballot):
    contest, first, _ = ballot
    with pytest.raises(PortalError) as excinfo:
        services.biases.apply_bias("a" * 32, first.id, 1, "Jury award", operator)
    assert excinfo.value.code is ErrorCode.NOT_FOUND

    elsewhere = make_nominee(make_contest(title="Best Score"))
    with pytest.raises(PortalError) as excinfo:
        services.biases.apply_bias(contest.id, elsewhere.id, 1, "Jury award", operator)
    assert excinfo.value.code is ErrorCode.BAD_TARGET


def test_unknown_bias(services, operator, app):
    with pytest.raises(PortalError) as excinfo:
        services.biases.deactivate_bias("b" * 32, operator, "Gone")
    assert excinfo.value.code is ErrorCode.NOT_FOUND
