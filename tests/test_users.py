from datetime import timedelta

import pytest

from conftest import NOW, PASSWORD
from errors import Forbidden, NotFound, PreconditionFailed, ValidationFailed
import library
from models import db, Notification, User
import rules


def test_username_and_email_are_unique(make_user):
    make_user(username='ana', email='ana@example.com')
    with pytest.raises(PreconditionFailed) as excinfo:
        make_user(username='ANA', email='other@example.com')
    assert excinfo.value.code == 'username_taken'
    with pytest.raises(PreconditionFailed) as excinfo:
        make_user(username='ana2', email='Ana@Example.com')
    assert excinfo.value.code == 'email_taken'


def test_unknown_role_is_rejected(make_user):
    with pytest.raises(ValidationFailed):
        make_user(role='janitor')


def test_password_is_hashed_and_checked(borrower):
    assert borrower.password != PASSWORD
    assert library.authenticate(borrower.username, PASSWORD) == borrower
    assert library.authenticate(borrower.username.upper(), PASSWORD) == borrower
    assert library.authenticate(borrower.username, 'wrong-password') is None
    assert library.authenticate('ghost', PASSWORD) is None


def test_change_own_password_needs_current_one(borrower):
    with pytest.raises(PreconditionFailed):
        library.change_password(borrower, borrower.id, 'new-password', 'not-it')
    with pytest.raises(ValidationFailed):
        library.change_password(borrower, borrower.id, 'short', PASSWORD)
    library.change_password(borrower, borrower.id, 'new-password', PASSWORD)
    assert library.authenticate(borrower.username, 'new-password') == borrower


def test_admin_resets_password_without_current_one(admin, borrower):
    library.change_password(admin, borrower.id, 'reset-by-admin')
    assert library.authenticate(borrower.username, 'reset-by-admin') == borrower


def test_librarian_cannot_reset_other_passwords(librarian, admin, borrower):
    for user in (admin, borrower):
        with pytest.raises(Forbidden):
            library.change_password(librarian, user.id, 'owned-by-desk')
        assert library.authenticate(user.username, 'owned-by-desk') is None
        assert library.authenticate(user.username, PASSWORD) == user


def test_readers_only_see_themselves(borrower, make_user):
    other = make_user()
    with pytest.raises(NotFound):
        library.get_user(borrower, other.id)
    with pytest.raises(NotFound):
        library.update_profile(borrower, other.id, {'phone': '555'})
    assert library.update_profile(borrower, borrower.id, {'phone': '555'}).phone == '555'


def test_profile_email_must_stay_unique(borrower, make_user):
    other = make_user()
    with pytest.raises(PreconditionFailed):
        library.update_profile(borrower, borrower.id, {'email': other.email})


def test_toggle_status_blocks_borrowing(admin, borrower, make_book):
    user = library.change_status(admin, borrower.id, now=NOW)
    assert user.status == rules.USER_SUSPENDED
    notice = Notification.query.filter_by(user_id=borrower.id, title='Account status changed').one()
    assert notice.type == 'alert'
    assert notice.priority == 'high'

    with pytest.raises(PreconditionFailed, match='not allowed to borrow'):
        library.create_loan(borrower, make_book().id, now=NOW)

    assert library.change_status(admin, borrower.id, now=NOW).status == rules.USER_ACTIVE


def test_explicit_status(admin, borrower):
    assert library.change_status(admin, borrower.id, rules.USER_INACTIVE, now=NOW).status == rules.USER_INACTIVE
    with pytest.raises(PreconditionFailed):
        library.change_status(admin, borrower.id, rules.USER_INACTIVE, now=NOW)
    with pytest.raises(ValidationFailed):
        library.change_status(admin, borrower.id, 'sleeping', now=NOW)


def test_admin_cannot_change_themselves(admin):
    with pytest.raises(PreconditionFailed):
        library.change_status(admin, admin.id, now=NOW)
    with pytest.raises(PreconditionFailed):
        library.change_role(admin, admin.id, rules.BORROWER, now=NOW)
    with pytest.raises(PreconditionFailed):
        library.delete_user(admin, admin.id)


def test_role_change_updates_limits(admin, borrower):
    user = library.change_role(admin, borrower.id, rules.LIBRARIAN, now=NOW)
    assert user.borrow_limit == 10
    assert user.loan_duration_days == 30
    notice = Notification.query.filter_by(user_id=borrower.id, title='Your role was changed').one()
    assert notice.payload == {'old_role': rules.BORROWER, 'new_role': rules.LIBRARIAN,
                              'administrator_id': admin.id}
    with pytest.raises(PreconditionFailed):
        library.change_role(admin, borrower.id, rules.LIBRARIAN, now=NOW)


def test_delete_refused_with_history(admin, borrower, make_book):
    library.create_loan(borrower, make_book().id, now=NOW)
    with pytest.raises(PreconditionFailed):
        library.delete_user(admin, borrower.id)


def test_delete_refused_for_staff_who_applied_sanctions(admin, librarian, borrower):
    library.create_sanction(librarian, borrower.id, rules.WARNING, 'Noise', now=NOW)
    with pytest.raises(PreconditionFailed, match='applied or lifted'):
        library.delete_user(admin, librarian.id)


def test_delete_renumbers_queues(admin, make_user, make_book):
    book = make_book()
    library.create_loan(make_user(), book.id, now=NOW)
    readers = [make_user() for _ in range(3)]
    for minute, reader in enumerate(readers):
        library.create_reservation(reader, book.id, now=NOW + timedelta(minutes=minute))

    library.delete_user(admin, readers[0].id)

    queue = library.book_queue(book.id, now=NOW)
    assert [(r.user_id, r.position) for r in queue] == [(readers[1].id, 1), (readers[2].id, 2)]


def test_delete_removes_notifications(admin, borrower):
    user_id = borrower.id
    library.delete_user(admin, user_id)
    assert db.session.get(User, user_id) is None
    assert Notification.query.filter_by(user_id=user_id).count() == 0


def test_summary(librarian, borrower):
    library.create_sanction(librarian, borrower.id, rules.FINE, 'Late', amount='4.50', now=NOW)
    summary = borrower.summary(NOW)
    assert summary['borrow_limit'] == 5
    assert summary['unpaid_fines'] == 4.5
    assert summary['can_borrow'] is True
    assert summary['suspended'] is False
    assert 'password' not in summary


def test_list_users_filters(librarian, make_user):
    make_user(first_name='Zoe', last_name='Quinn')
    assert [u.first_name for u in library.list_users(search='quinn')] == ['Zoe']
    assert [u.id for u in library.list_users(role=rules.LIBRARIAN)] == [librarian.id]
