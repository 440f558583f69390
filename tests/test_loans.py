from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import NOW
from errors import Forbidden, NotFound, PreconditionFailed, ValidationFailed
import library
from models import db, Book, Loan, Notification, Reservation, Sanction
import notifications
import rules


def test_create_loan_takes_a_copy_and_sets_due_date(borrower, make_book):
    book = make_book(copies=2)
    loan = library.create_loan(borrower, book.id, now=NOW)

    assert loan.status == rules.LOAN_ACTIVE
    assert loan.due_at == NOW + timedelta(days=14)
    assert loan.extension_count == 0
    assert db.session.get(Book, book.id).available_copies == 1
    titles = [n.title for n in Notification.query.filter_by(user_id=borrower.id)]
    assert 'Loan confirmed' in titles


def test_staff_loans_last_thirty_days(librarian, make_book):
    loan = library.create_loan(librarian, make_book().id, now=NOW)
    assert loan.due_at == NOW + timedelta(days=30)


def test_no_copy_left_fails(borrower, make_user, make_book):
    book = make_book(copies=1)
    library.create_loan(borrower, book.id, now=NOW)
    with pytest.raises(PreconditionFailed):
        library.create_loan(make_user(), book.id, now=NOW)
    assert db.session.get(Book, book.id).available_copies == 0


def test_sixth_loan_over_role_limit_fails(borrower, make_book):
    for _ in range(5):
        library.create_loan(borrower, make_book().id, now=NOW)
    with pytest.raises(PreconditionFailed, match='limit'):
        library.create_loan(borrower, make_book().id, now=NOW)


def test_same_book_twice_fails(borrower, make_book):
    book = make_book(copies=3)
    library.create_loan(borrower, book.id, now=NOW)
    with pytest.raises(PreconditionFailed, match='already'):
        library.create_loan(borrower, book.id, now=NOW)


def test_inactive_account_cannot_borrow(admin, borrower, make_book):
    library.change_status(admin, borrower.id, rules.USER_INACTIVE, now=NOW)
    with pytest.raises(PreconditionFailed):
        library.create_loan(borrower, make_book().id, now=NOW)


def test_suspension_blocks_loans_until_it_ends(librarian, borrower, make_book):
    library.create_sanction(librarian, borrower.id, rules.SUSPENSION, 'Damaged book',
                            duration_days=10, now=NOW)
    assert not borrower.can_borrow(NOW + timedelta(days=1))
    with pytest.raises(PreconditionFailed):
        library.create_loan(borrower, make_book().id, now=NOW + timedelta(days=1))

    # no sweep needed: eligibility reads the end date
    loan = library.create_loan(borrower, make_book().id, now=NOW + timedelta(days=11))
    assert loan.status == rules.LOAN_ACTIVE


def test_borrower_cannot_borrow_for_someone_else(borrower, make_user, make_book):
    with pytest.raises(Forbidden):
        library.create_loan(borrower, make_book().id, borrower_id=make_user().id, now=NOW)


def test_librarian_borrows_on_behalf_of_reader(librarian, borrower, make_book):
    loan = library.create_loan(librarian, make_book().id, borrower_id=borrower.id, now=NOW)
    assert loan.user_id == borrower.id
    assert loan.due_at == NOW + timedelta(days=14)


def test_unknown_book_is_not_found(borrower):
    with pytest.raises(NotFound):
        library.create_loan(borrower, 999, now=NOW)


def test_failed_notification_leaves_nothing_behind(borrower, make_book, monkeypatch):
    book = make_book(copies=1)

    def broken(loan, now):
        raise RuntimeError('outbox down')

    monkeypatch.setattr(notifications, 'loan_confirmed', broken)
    with pytest.raises(RuntimeError):
        library.create_loan(borrower, book.id, now=NOW)
    assert Loan.query.count() == 0
    assert db.session.get(Book, book.id).available_copies == 1


def test_extend_adds_days_and_counts(borrower, make_book):
    loan = library.create_loan(borrower, make_book().id, now=NOW)
    due = loan.due_at

    library.extend_loan(borrower, loan.id, 5, now=NOW)
    loan = db.session.get(Loan, loan.id)
    assert loan.due_at == due + timedelta(days=5)
    assert loan.extension_count == 1

    library.extend_loan(borrower, loan.id, now=NOW)
    assert db.session.get(Loan, loan.id).extension_count == 2
    with pytest.raises(PreconditionFailed, match='Extension limit'):
        library.extend_loan(borrower, loan.id, 3, now=NOW)


@pytest.mark.parametrize('days', [0, 15, 'abc'])
def test_extension_days_are_validated(borrower, make_book, days):
    loan = library.create_loan(borrower, make_book().id, now=NOW)
    with pytest.raises(ValidationFailed):
        library.extend_loan(borrower, loan.id, days, now=NOW)


def test_overdue_loan_cannot_be_extended(borrower, make_book):
    loan = library.create_loan(borrower, make_book().id, now=NOW)
    with pytest.raises(PreconditionFailed, match='Overdue'):
        library.extend_loan(borrower, loan.id, 3, now=NOW + timedelta(days=20))


def test_reserved_book_cannot_be_extended(borrower, make_user, make_book):
    book = make_book(copies=1)
    loan = library.create_loan(borrower, book.id, now=NOW)
    library.create_reservation(make_user(), book.id, now=NOW)
    with pytest.raises(PreconditionFailed, match='reserved'):
        library.extend_loan(borrower, loan.id, 3, now=NOW)


def test_borrower_cannot_extend_another_readers_loan(borrower, make_user, make_book):
    loan = library.create_loan(borrower, make_book().id, now=NOW)
    with pytest.raises(NotFound):
        library.extend_loan(make_user(), loan.id, 3, now=NOW)


def test_on_time_return_restores_copy_without_fine(librarian, borrower, make_book):
    book = make_book(copies=1)
    loan = library.create_loan(borrower, book.id, now=NOW)

    loan, fine = library.return_loan(librarian, loan.id, now=NOW + timedelta(days=3))
    assert fine is None
    assert loan.status == rules.LOAN_RETURNED
    assert loan.returned_at == NOW + timedelta(days=3)
    book = db.session.get(Book, book.id)
    assert book.available_copies == 1
    assert Sanction.query.count() == 0


def test_late_return_creates_fine(librarian, borrower, make_book):
    book = make_book()
    borrowed = datetime(2023, 12, 27, 10, 0)
    loan = library.create_loan(borrower, book.id, now=borrowed)
    assert loan.due_at == datetime(2024, 1, 10, 10, 0)

    loan, fine = library.return_loan(librarian, loan.id, now=datetime(2024, 1, 15, 9, 0))
    assert fine.type == rules.FINE
    assert fine.amount == Decimal('2.50')
    assert fine.loan_id == loan.id
    assert fine.applied_by == librarian.id
    assert fine.status == rules.SANCTION_ACTIVE
    assert Notification.query.filter_by(user_id=borrower.id, type='sanction').count() == 1


def test_fine_cap_from_config(app, librarian, borrower, make_book):
    app.config['LIBRARY_MAX_FINE'] = Decimal('1.00')
    loan = library.create_loan(borrower, make_book().id, now=NOW)
    _, fine = library.return_loan(librarian, loan.id, now=NOW + timedelta(days=40))
    assert fine.amount == Decimal('1.00')


def test_returning_twice_is_rejected_without_side_effects(librarian, borrower, make_book):
    book = make_book(copies=1)
    loan = library.create_loan(borrower, book.id, now=NOW)
    library.return_loan(librarian, loan.id, now=NOW)
    with pytest.raises(PreconditionFailed):
        library.return_loan(librarian, loan.id, now=NOW)
    assert db.session.get(Book, book.id).available_copies == 1


def test_return_notifies_first_in_queue(librarian, make_user, make_book):
    reader_a, reader_b = make_user(), make_user()
    book = make_book(copies=1)
    loan = library.create_loan(reader_a, book.id, now=NOW)
    assert db.session.get(Book, book.id).available_copies == 0

    reservation = library.create_reservation(reader_b, book.id, now=NOW + timedelta(hours=1))
    assert reservation.position == 1

    library.return_loan(librarian, loan.id, now=NOW + timedelta(days=2))
    assert db.session.get(Book, book.id).available_copies == 1
    reservation = db.session.get(Reservation, reservation.id)
    assert reservation.notified is True
    assert reservation.status == rules.RESERVATION_ACTIVE
    assert reservation.position == 1
    assert Notification.query.filter_by(user_id=reader_b.id, title='Book available').count() == 1


def test_mark_lost_keeps_copy_out_and_charges_penalty(librarian, borrower, make_book):
    book = make_book(copies=2)
    loan = library.create_loan(borrower, book.id, now=NOW)

    loan, penalty = library.mark_lost(librarian, loan.id, 'Left on a train', now=NOW + timedelta(days=5))
    assert loan.status == rules.LOAN_LOST
    assert loan.notes == 'Left on a train'
    assert penalty.amount == Decimal('50.00')
    book = db.session.get(Book, book.id)
    assert book.available_copies == 1
    assert book.total_copies == 2

    with pytest.raises(PreconditionFailed):
        library.mark_lost(librarian, loan.id, now=NOW)


def test_borrowers_only_list_their_own_loans(librarian, borrower, make_user, make_book):
    library.create_loan(borrower, make_book().id, now=NOW)
    library.create_loan(make_user(), make_book().id, now=NOW)

    assert len(library.list_loans(borrower, now=NOW)) == 1
    assert len(library.list_loans(librarian, now=NOW)) == 2
    assert len(library.list_loans(librarian, overdue=True, now=NOW + timedelta(days=30))) == 2
