"""Notification outbox.

One function per event that users are told about. Each appends a single
``Notification`` row to the current session (the caller's transaction
commits it) with a fixed message and a payload of the ids it refers to.
Clients poll ``/api/notifications`` to read them.
"""

from datetime import timedelta

from models import db, Notification
import rules

TYPES = ('info', 'reminder', 'alert', 'sanction', 'success')
PRIORITIES = ('low', 'normal', 'high', 'urgent')

DEFAULT_PRIORITY = {
    'sanction': 'urgent',
    'alert': 'high',
    'reminder': 'normal',
    'success': 'normal',
    'info': 'low',
}

ROLE_LABELS = {
    rules.BORROWER: 'Borrower',
    rules.LIBRARIAN: 'Librarian',
    rules.ADMINISTRATOR: 'Administrator',
}


def _date(value):
    return value.strftime('%d/%m/%Y') if value else None


def _iso(value):
    return value.isoformat() if value else None


def push(user_id, title, message, type, now, payload=None, priority=None):
    if type not in TYPES:
        raise ValueError('Invalid notification type: %s' % type)
    notification = Notification(
        user_id=user_id,
        title=title,
        message=message,
        type=type,
        priority=priority or DEFAULT_PRIORITY[type],
        read=False,
        sent_at=now,
        payload=payload or {},
    )
    db.session.add(notification)
    return notification


# Membership

def welcome(user, now):
    label = ROLE_LABELS.get(user.role, 'User')
    return push(user.id, 'Welcome to the university library',
                "Your account was created with the role '%s'. You can now use every library service." % label,
                'info', now,
                payload={'role': user.role, 'account_created_at': _iso(user.created_at or now)})


def role_changed(user, old_role, new_role, admin, now):
    label = ROLE_LABELS.get(new_role, 'User')
    return push(user.id, 'Your role was changed',
                "Your role was changed to '%s' by %s." % (label, admin.full_name),
                'info', now,
                payload={'old_role': old_role, 'new_role': new_role, 'administrator_id': admin.id})


def status_changed(user, old_status, new_status, now):
    if new_status == rules.USER_ACTIVE:
        message = 'Your account was reactivated. You can use every library service again.'
        type = 'success'
    else:
        message = 'Your account was %s. Contact the library administration for details.' % new_status
        type = 'alert'
    return push(user.id, 'Account status changed', message, type, now, priority='high',
                payload={'old_status': old_status, 'new_status': new_status, 'changed_at': _iso(now)})


# Loans

def loan_confirmed(loan, now):
    return push(loan.user_id, 'Loan confirmed',
                'You borrowed "%s". Due back on %s.' % (loan.book.title, _date(loan.due_at)),
                'info', now,
                payload={'loan_id': loan.id, 'book_id': loan.book_id, 'due_at': _iso(loan.due_at)})


def due_reminder(loan, now):
    return push(loan.user_id, 'Return reminder',
                'Please return "%s" before %s.' % (loan.book.title, _date(loan.due_at)),
                'reminder', now,
                payload={'loan_id': loan.id, 'book_id': loan.book_id, 'due_at': _iso(loan.due_at),
                         'days_remaining': loan.days_remaining(now)})


def overdue_alert(loan, now, fine_so_far):
    days = loan.overdue_days(now)
    return push(loan.user_id, 'Overdue book',
                '"%s" is %d day(s) overdue. Please return it quickly to avoid further sanctions.'
                % (loan.book.title, days),
                'alert', now,
                payload={'loan_id': loan.id, 'book_id': loan.book_id, 'overdue_days': days,
                         'potential_fine': str(fine_so_far)})


# Reservations

def reservation_recorded(reservation, now):
    return push(reservation.user_id, 'Reservation recorded',
                'Your reservation for "%s" is recorded. Queue position: %d.'
                % (reservation.book.title, reservation.position),
                'success', now,
                payload={'reservation_id': reservation.id, 'book_id': reservation.book_id,
                         'position': reservation.position,
                         'estimated_wait': reservation.estimated_wait()})


def book_available(reservation, now, hold_days):
    return push(reservation.user_id, 'Book available',
                'The book "%s" you reserved is available again. Ask a librarian to confirm your '
                'reservation within %d days.' % (reservation.book.title, hold_days),
                'info', now,
                payload={'reservation_id': reservation.id, 'book_id': reservation.book_id,
                         'pickup_deadline': _iso(now + timedelta(days=hold_days))})


def reservation_cancelled(reservation, now):
    return push(reservation.user_id, 'Reservation cancelled',
                'Your reservation for "%s" was cancelled.' % reservation.book.title,
                'info', now,
                payload={'reservation_id': reservation.id, 'book_id': reservation.book_id})


def reservation_ready(reservation, now):
    return push(reservation.user_id, 'Reservation ready',
                '"%s" is waiting for you. Pick it up before %s.'
                % (reservation.book.title, _date(reservation.expires_at)),
                'success', now, priority='high',
                payload={'reservation_id': reservation.id, 'book_id': reservation.book_id,
                         'pickup_deadline': _iso(reservation.expires_at)})


def reservation_expired(reservation, now):
    return push(reservation.user_id, 'Reservation expired',
                'Your reservation for "%s" expired.' % reservation.book.title,
                'info', now,
                payload={'reservation_id': reservation.id, 'book_id': reservation.book_id})


# Sanctions

def sanction_applied(sanction, now):
    if sanction.type == rules.FINE:
        message = 'A fine of %s was applied to your account. Reason: %s' % (sanction.amount, sanction.reason)
    elif sanction.type == rules.SUSPENSION:
        message = 'Your account is suspended until %s. Reason: %s' % (_date(sanction.ends_at), sanction.reason)
    else:
        message = 'A warning was issued on your account. Reason: %s' % sanction.reason
    return push(sanction.user_id, 'Sanction applied', message, 'sanction', now,
                payload={'sanction_id': sanction.id, 'sanction_type': sanction.type,
                         'amount': str(sanction.amount), 'ends_at': _iso(sanction.ends_at),
                         'loan_id': sanction.loan_id, 'reason': sanction.reason})


def sanction_lifted(sanction, now):
    return push(sanction.user_id, 'Sanction lifted',
                'The %s on your account was lifted.' % sanction.type,
                'success', now,
                payload={'sanction_id': sanction.id, 'sanction_type': sanction.type})


def sanction_paid(sanction, amount_paid, now):
    return push(sanction.user_id, 'Payment confirmed',
                'Your payment of %s for the fine "%s" was recorded.' % (amount_paid, sanction.reason),
                'success', now,
                payload={'sanction_id': sanction.id, 'amount_paid': str(amount_paid)})


def sanction_extended(sanction, days, reason, now):
    message = 'Your %s was extended by %d day(s).' % (sanction.type, days)
    if reason:
        message += ' Reason: %s' % reason
    return push(sanction.user_id, 'Sanction extended', message, 'info', now,
                payload={'sanction_id': sanction.id, 'days': days, 'ends_at': _iso(sanction.ends_at)})
