import pytest

from voting_portal.authentication.rbac import Permission, RBACService
from voting_portal.database.models import Role
from voting_portal.errors import ErrorCode, PortalError


@pytest.fixture
def rbac():
    return RBACService()


def test_basic_voter_permissions(rbac):
    assert set(rbac.get_permissions(Role.BASIC)) == {Permission.VOTE, Permission.VIEW_OWN_STATUS}


def test_roles_inherit_downwards(rbac):
    assert rbac.has_permission(Role.CURATOR, Permission.VOTE)
    assert rbac.has_permission(Role.OPERATOR, Permission.VOTE)
    assert rbac.has_permission(Role.OPERATOR, Permission.MANAGE_BIASES)
    assert not rbac.has_permission(Role.CURATOR, Permission.MANAGE_BIASES)


def test_string_inputs(rbac):
    assert rbac.has_permission("operator", "retract_votes")
    assert not rbac.has_permission("basic", "manage_roles")


def test_require(rbac):
    rbac.require(Role.OPERATOR, Permission.MANAGE_CACHE)
    with pytest.raises(PortalError) as excinfo:
        rbac.require(Role.BASIC, Permission.MANAGE_CACHE)
    assert excinfo.value.code is ErrorCode.FORBIDDEN


def test_audit_logs_are_operator_only(rbac):
    assert rbac.has_permission(Role.OPERATOR, Permission.VIEW_AUDIT_LOGS)
    assert not rbac.has_permission(Role.CURATOR, Permission.VIEW_AUDIT_LOGS)
