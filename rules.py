"""Business rules of the circulation desk.

Everything in here is a plain function over plain values (statuses, dates,
counters) so the rules can be checked without a database. The models and
the operations in ``library.py`` feed their current state in and act on the
answer.

Refusal helpers return ``None`` when the operation may proceed and a
human-readable reason otherwise.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

BORROWER = 'borrower'
LIBRARIAN = 'librarian'
ADMINISTRATOR = 'administrator'
ROLES = (BORROWER, LIBRARIAN, ADMINISTRATOR)
STAFF_ROLES = (LIBRARIAN, ADMINISTRATOR)

USER_ACTIVE = 'active'
USER_SUSPENDED = 'suspended'
USER_INACTIVE = 'inactive'
USER_STATUSES = (USER_ACTIVE, USER_SUSPENDED, USER_INACTIVE)

BOOK_AVAILABLE = 'available'
BOOK_STATUSES = ('available', 'unavailable', 'maintenance', 'reserved', 'loaned', 'lost')

LOAN_ACTIVE = 'active'
LOAN_RETURNED = 'returned'
LOAN_LOST = 'lost'

RESERVATION_ACTIVE = 'active'
RESERVATION_CONFIRMED = 'confirmed'
RESERVATION_EXPIRED = 'expired'
RESERVATION_CANCELLED = 'cancelled'

FINE = 'fine'
SUSPENSION = 'suspension'
WARNING = 'warning'
SANCTION_TYPES = (FINE, SUSPENSION, WARNING)

SANCTION_ACTIVE = 'active'
SANCTION_PAID = 'paid'
SANCTION_LIFTED = 'lifted'
SANCTION_EXPIRED = 'expired'

BORROW_LIMITS = {BORROWER: 5, LIBRARIAN: 10, ADMINISTRATOR: 15}
LOAN_DURATIONS = {BORROWER: 14, LIBRARIAN: 30, ADMINISTRATOR: 30}
DEFAULT_BORROW_LIMIT = 3
DEFAULT_LOAN_DAYS = 14

MAX_EXTENSIONS = 2
MIN_EXTENSION_DAYS = 1
MAX_EXTENSION_DAYS = 14
DEFAULT_EXTENSION_DAYS = 7

FINE_PER_DAY = Decimal('0.50')
LOST_BOOK_PENALTY = Decimal('50.00')

MAX_ACTIVE_RESERVATIONS = 5
RESERVATION_HOLD_DAYS = 7
PICKUP_WINDOW_DAYS = 3

DEFAULT_SUSPENSION_DAYS = 30
DUE_SOON_DAYS = 3

CENTS = Decimal('0.01')


def utcnow():
    """Naive UTC timestamp, the form every date column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def borrow_limit(role):
    return BORROW_LIMITS.get(role, DEFAULT_BORROW_LIMIT)


def loan_duration_days(role):
    return LOAN_DURATIONS.get(role, DEFAULT_LOAN_DAYS)


def book_is_available(status, available_copies):
    return status == BOOK_AVAILABLE and available_copies > 0


# Loans

def is_overdue(status, due_at, now):
    return status == LOAN_ACTIVE and now > due_at


def overdue_days(status, due_at, now):
    """Whole calendar days between the due date and ``now`` for an overdue loan."""
    if not is_overdue(status, due_at, now):
        return 0
    return max(0, (now.date() - due_at.date()).days)


def days_remaining(status, due_at, now):
    if status != LOAN_ACTIVE:
        return None
    return (due_at.date() - now.date()).days


def is_due_soon(status, due_at, now, within_days=DUE_SOON_DAYS):
    if status != LOAN_ACTIVE or is_overdue(status, due_at, now):
        return False
    return (due_at - now).total_seconds() <= within_days * 86400


def compute_fine(days, rate=FINE_PER_DAY, cap=None):
    amount = (Decimal(max(0, days)) * Decimal(rate)).quantize(CENTS, rounding=ROUND_HALF_UP)
    if cap is not None and amount > Decimal(cap):
        amount = Decimal(cap).quantize(CENTS, rounding=ROUND_HALF_UP)
    return amount


def borrow_refusal(user_status, suspended, active_loans, limit, book_available,
                   already_borrowing):
    if user_status != USER_ACTIVE or suspended:
        return 'Borrower is not allowed to borrow (account suspended or active sanction)'
    if active_loans >= limit:
        return 'Loan limit reached'
    if not book_available:
        return 'Book not available'
    if already_borrowing:
        return 'Borrower already has this book on loan'
    return None


def extension_refusal(status, due_at, extension_count, waiting_reservations, now):
    if status != LOAN_ACTIVE:
        return 'Loan is not active'
    if is_overdue(status, due_at, now):
        return 'Overdue loans cannot be extended'
    if extension_count >= MAX_EXTENSIONS:
        return 'Extension limit reached'
    if waiting_reservations > 0:
        return 'Book is reserved by another reader'
    return None


# Reservations

def reservation_refusal(book_available, already_reserved, active_reservations,
                        max_active=MAX_ACTIVE_RESERVATIONS):
    if book_available:
        return 'Book is currently available, borrow it directly'
    if already_reserved:
        return 'An active reservation for this book already exists'
    if active_reservations >= max_active:
        return 'Maximum number of active reservations reached (%d)' % max_active
    return None


def queue_positions(reservations):
    """Pair each active reservation with its 1-based rank, oldest first.

    Ties on the reservation timestamp fall back to the id so the order is
    stable across calls.
    """
    ordered = sorted(reservations, key=lambda r: (r.reserved_at, r.id or 0))
    return [(reservation, index) for index, reservation in enumerate(ordered, start=1)]


def estimated_wait(position, loan_days=DEFAULT_LOAN_DAYS):
    if position <= 1:
        return 'Available now'
    days = (position - 1) * loan_days
    if days < 7:
        return 'Less than a week'
    if days < 30:
        return 'About %d week(s)' % -(-days // 7)
    return 'About %d month(s)' % -(-days // 30)


# Sanctions

def sanction_in_effect(status, ends_at, now):
    return status == SANCTION_ACTIVE and (ends_at is None or now < ends_at)


def sanction_has_lapsed(status, ends_at, now):
    return status == SANCTION_ACTIVE and ends_at is not None and now > ends_at


def payment_refusal(sanction_type, status, amount_due, amount_paid):
    if sanction_type != FINE:
        return 'Only fines can be paid'
    if status != SANCTION_ACTIVE:
        return 'Sanction is not active'
    if amount_paid < amount_due:
        return 'Partial payment not accepted'
    return None
