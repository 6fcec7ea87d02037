import pytest

from minilibrary.errors import ForbiddenError
from minilibrary.models import User
from minilibrary.roles import STAFF, Role, authorize, has_min_role


def _user(role, user_id=1):
    return User(id=user_id, name="U", email=f"u{user_id}@example.com", role=role)


@pytest.mark.parametrize("actual, required, expected", [
    (Role.MEMBER, Role.MEMBER, True),
    (Role.MEMBER, Role.LIBRARIAN, False),
    (Role.LIBRARIAN, Role.LIBRARIAN, True),
    (Role.LIBRARIAN, Role.ADMIN, False),
    (Role.ADMIN, Role.LIBRARIAN, True),
    (Role.ADMIN, Role.MEMBER, True),
])
def test_has_min_role(actual, required, expected):
    assert has_min_role(actual, required) is expected


def test_role_parse_is_strict():
    assert Role.parse("ADMIN") is Role.ADMIN
    with pytest.raises(ValueError):
        Role.parse("admin ")
    with pytest.raises(ValueError):
        Role.parse("OWNER")


def test_authorize_owner_or_staff():
    member = _user(Role.MEMBER, user_id=1)
    authorize(member, owner_id=1, min_role=STAFF)
    with pytest.raises(ForbiddenError):
        authorize(member, owner_id=2, min_role=STAFF)
    authorize(_user(Role.LIBRARIAN, user_id=3), owner_id=2, min_role=STAFF)


def test_authorize_min_role_only():
    with pytest.raises(ForbiddenError):
        authorize(_user(Role.LIBRARIAN), min_role=Role.ADMIN)
    authorize(_user(Role.ADMIN), min_role=Role.ADMIN)
    authorize(_user(Role.MEMBER))
