from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import rules


def test_role_limits_and_durations():
    assert rules.borrow_limit(rules.BORROWER) == 5
    assert rules.borrow_limit(rules.LIBRARIAN) == 10
    assert rules.borrow_limit(rules.ADMINISTRATOR) == 15
    assert rules.borrow_limit('visitor') == rules.DEFAULT_BORROW_LIMIT
    assert rules.loan_duration_days(rules.BORROWER) == 14
    assert rules.loan_duration_days(rules.LIBRARIAN) == 30
    assert rules.loan_duration_days(rules.ADMINISTRATOR) == 30


def test_overdue_days_counts_calendar_days():
    due = datetime(2024, 1, 10, 10, 0)
    returned = datetime(2024, 1, 15, 9, 0)
    assert rules.is_overdue(rules.LOAN_ACTIVE, due, returned)
    assert rules.overdue_days(rules.LOAN_ACTIVE, due, returned) == 5


def test_closed_loans_are_never_overdue():
    due = datetime(2024, 1, 10)
    later = datetime(2024, 2, 1)
    assert not rules.is_overdue(rules.LOAN_RETURNED, due, later)
    assert rules.overdue_days(rules.LOAN_LOST, due, later) == 0
    assert rules.days_remaining(rules.LOAN_RETURNED, due, later) is None


def test_fine_is_days_times_rate():
    assert rules.compute_fine(5) == Decimal('2.50')
    assert rules.compute_fine(0) == Decimal('0.00')
    assert rules.compute_fine(-3) == Decimal('0.00')


def test_fine_cap_applies_only_when_configured():
    assert rules.compute_fine(400) == Decimal('200.00')
    assert rules.compute_fine(400, cap=Decimal('20')) == Decimal('20.00')


def test_due_soon_window():
    now = datetime(2024, 1, 1, 12, 0)
    assert rules.is_due_soon(rules.LOAN_ACTIVE, now + timedelta(days=2), now)
    assert not rules.is_due_soon(rules.LOAN_ACTIVE, now + timedelta(days=5), now)
    assert not rules.is_due_soon(rules.LOAN_ACTIVE, now - timedelta(hours=1), now)


def test_borrow_refusal_order():
    ok = dict(user_status=rules.USER_ACTIVE, suspended=False, active_loans=0, limit=5,
              book_available=True, already_borrowing=False)
    assert rules.borrow_refusal(**ok) is None
    assert 'suspended' in rules.borrow_refusal(**dict(ok, suspended=True))
    assert 'suspended' in rules.borrow_refusal(**dict(ok, user_status=rules.USER_INACTIVE))
    assert rules.borrow_refusal(**dict(ok, active_loans=5)) == 'Loan limit reached'
    assert rules.borrow_refusal(**dict(ok, book_available=False)) == 'Book not available'
    assert 'already' in rules.borrow_refusal(**dict(ok, already_borrowing=True))


def test_extension_refusal():
    now = datetime(2024, 1, 1)
    due = now + timedelta(days=3)
    assert rules.extension_refusal(rules.LOAN_ACTIVE, due, 0, 0, now) is None
    assert rules.extension_refusal(rules.LOAN_ACTIVE, due, 2, 0, now) == 'Extension limit reached'
    assert rules.extension_refusal(rules.LOAN_ACTIVE, due, 0, 1, now) is not None
    assert rules.extension_refusal(rules.LOAN_ACTIVE, now - timedelta(days=1), 0, 0, now) is not None
    assert rules.extension_refusal(rules.LOAN_RETURNED, due, 0, 0, now) == 'Loan is not active'


def test_reservation_refusal():
    assert rules.reservation_refusal(False, False, 0) is None
    assert 'available' in rules.reservation_refusal(True, False, 0)
    assert 'already' in rules.reservation_refusal(False, True, 0)
    assert '(5)' in rules.reservation_refusal(False, False, 5)


def test_queue_positions_follow_reservation_time():
    t = datetime(2024, 1, 1)
    late = SimpleNamespace(id=1, reserved_at=t + timedelta(hours=2))
    early = SimpleNamespace(id=2, reserved_at=t)
    tie = SimpleNamespace(id=3, reserved_at=t)
    ranked = rules.queue_positions([late, tie, early])
    assert [(r.id, p) for r, p in ranked] == [(2, 1), (3, 2), (1, 3)]
    assert rules.queue_positions([]) == []


def test_estimated_wait():
    assert rules.estimated_wait(1) == 'Available now'
    assert rules.estimated_wait(2) == 'About 2 week(s)'
    assert rules.estimated_wait(4) == 'About 2 month(s)'


def test_sanction_effect_is_derived_from_dates():
    now = datetime(2024, 1, 1)
    assert rules.sanction_in_effect(rules.SANCTION_ACTIVE, None, now)
    assert rules.sanction_in_effect(rules.SANCTION_ACTIVE, now + timedelta(days=1), now)
    assert not rules.sanction_in_effect(rules.SANCTION_ACTIVE, now - timedelta(days=1), now)
    assert not rules.sanction_in_effect(rules.SANCTION_LIFTED, None, now)
    assert rules.sanction_has_lapsed(rules.SANCTION_ACTIVE, now - timedelta(seconds=1), now)
    assert not rules.sanction_has_lapsed(rules.SANCTION_ACTIVE, None, now)


def test_payment_refusal():
    due = Decimal('2.50')
    assert rules.payment_refusal(rules.FINE, rules.SANCTION_ACTIVE, due, due) is None
    assert rules.payment_refusal(rules.FINE, rules.SANCTION_ACTIVE, due, Decimal('3')) is None
    assert rules.payment_refusal(rules.FINE, rules.SANCTION_ACTIVE, due, Decimal('1')) == 'Partial payment not accepted'
    assert rules.payment_refusal(rules.WARNING, rules.SANCTION_ACTIVE, due, due) == 'Only fines can be paid'
    assert rules.payment_refusal(rules.FINE, rules.SANCTION_PAID, due, due) == 'Sanction is not active'
