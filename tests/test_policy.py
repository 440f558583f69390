import pytest

import policy
import rules


@pytest.mark.parametrize('action', ['book.create', 'loan.return', 'reservation.confirm',
                                    'sanction.create', 'stats.view'])
def test_staff_only_actions(action):
    assert not policy.can(rules.BORROWER, action)
    assert policy.can(rules.LIBRARIAN, action)
    assert policy.can(rules.ADMINISTRATOR, action)


@pytest.mark.parametrize('action', ['user.toggle_status', 'user.change_role', 'user.delete',
                                    'user.create', 'book.delete'])
def test_admin_only_actions(action):
    assert not policy.can(rules.LIBRARIAN, action)
    assert policy.can(rules.ADMINISTRATOR, action)


@pytest.mark.parametrize('action', ['loan.create', 'loan.extend', 'reservation.create',
                                    'reservation.cancel', 'sanction.pay'])
def test_everyone_actions(action):
    for role in rules.ROLES:
        assert policy.can(role, action)


def test_unknown_action_is_denied():
    assert not policy.can(rules.ADMINISTRATOR, 'library.burn')


def test_decorator_rejects_unknown_action():
    with pytest.raises(KeyError):
        policy.requires('library.burn')


def test_every_action_names_known_roles():
    for roles in policy.PERMISSIONS.values():
        assert roles <= set(rules.ROLES)
