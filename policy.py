"""Who may do what.

Permissions are looked up once per request from a single table keyed by
action name, instead of repeating role checks inside every view.
"""

from functools import wraps

from flask_login import current_user, login_required

from errors import Forbidden
from rules import ADMINISTRATOR, ROLES, STAFF_ROLES

EVERYONE = frozenset(ROLES)
STAFF = frozenset(STAFF_ROLES)
ADMIN_ONLY = frozenset((ADMINISTRATOR,))

PERMISSIONS = {
    # catalog
    'book.view': EVERYONE,
    'book.create': STAFF,
    'book.update': STAFF,
    'book.delete': ADMIN_ONLY,
    'book.import': STAFF,
    'category.create': STAFF,
    # loans
    'loan.create': EVERYONE,
    'loan.create_for_other': STAFF,
    'loan.extend': EVERYONE,
    'loan.return': STAFF,
    'loan.mark_lost': STAFF,
    'loan.view_all': STAFF,
    # reservations
    'reservation.create': EVERYONE,
    'reservation.cancel': EVERYONE,
    'reservation.confirm': STAFF,
    'reservation.view_all': STAFF,
    # sanctions
    'sanction.create': STAFF,
    'sanction.update': STAFF,
    'sanction.lift': STAFF,
    'sanction.extend': STAFF,
    'sanction.pay': EVERYONE,
    'sanction.view_all': STAFF,
    # notifications
    'notification.send': STAFF,
    # membership
    'user.list': STAFF,
    'user.view_all': STAFF,
    'user.create': ADMIN_ONLY,
    'user.reset_password': ADMIN_ONLY,
    'user.toggle_status': ADMIN_ONLY,
    'user.change_role': ADMIN_ONLY,
    'user.delete': ADMIN_ONLY,
    # housekeeping
    'stats.view': STAFF,
    'maintenance.sweep': STAFF,
}


def can(role, action):
    return role in PERMISSIONS.get(action, ())


def ensure(user, action):
    if user is None or not can(user.role, action):
        raise Forbidden('Access denied')


def requires(action):
    """View decorator: the logged-in user's role must allow ``action``."""
    if action not in PERMISSIONS:
        raise KeyError('Unknown action: %s' % action)

    def decorator(view):
        @wraps(view)
        @login_required
        def wrapper(*args, **kwargs):
            ensure(current_user, action)
            return view(*args, **kwargs)
        return wrapper
    return decorator
