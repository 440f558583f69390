"""Library operations: catalog, membership, loans, reservations, sanctions.

Each public function that changes state runs inside ``atomic()`` so the
entity update, the counters it touches and the notifications it emits are
committed together or not at all. Functions take the acting user and an
optional ``now``; the HTTP layer leaves ``now`` out, tests pin it.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

import pandas as pd
from flask import current_app
from sqlalchemy import func, or_
from werkzeug.security import check_password_hash, generate_password_hash

from errors import Forbidden, NotFound, PreconditionFailed, ValidationFailed
from models import db, Book, Category, Loan, Notification, Reservation, Sanction, User
import notifications
import policy
import rules

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ('first_name', 'last_name', 'student_number', 'phone')
BOOK_FIELDS = ('title', 'author', 'isbn', 'publisher', 'publication_year', 'language',
               'summary', 'location', 'category_id', 'status')
CSV_COLUMNS = ('Title', 'Author', 'ISBN', 'Copies')


@contextmanager
def atomic():
    """Commit the block as one transaction, roll back on any error."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _setting(name, default):
    return current_app.config.get(name, default)


def _get(model, ident, label):
    obj = db.session.get(model, ident) if ident is not None else None
    if obj is None:
        raise NotFound('%s not found' % label)
    return obj


def _refuse(reason, **kwargs):
    logger.warning('Rejected: %s', reason)
    raise PreconditionFailed(reason, **kwargs)


def as_int(value, field, minimum=None, maximum=None):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationFailed('%s must be an integer' % field)
    if minimum is not None and number < minimum:
        raise ValidationFailed('%s must be at least %d' % (field, minimum))
    if maximum is not None and number > maximum:
        raise ValidationFailed('%s must be at most %d' % (field, maximum))
    return number


def as_amount(value, field):
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationFailed('%s must be a number' % field)
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed('%s must be a positive number' % field)
    return amount.quantize(rules.CENTS)


def as_datetime(value, field):
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationFailed('%s must be an ISO date' % field)


# Membership

def register_user(username, email, password, role=rules.BORROWER, now=None, **profile):
    now = now or rules.utcnow()
    if not username or not email or not password:
        raise ValidationFailed('username, email and password are required')
    if role not in rules.ROLES:
        raise ValidationFailed('Unknown role: %s' % role)
    with atomic():
        if User.query.filter(func.lower(User.username) == username.lower()).first():
            _refuse('Username already exists', code='username_taken')
        if User.query.filter(func.lower(User.email) == email.lower()).first():
            _refuse('Email already exists', code='email_taken')
        user = User(username=username, email=email, password=generate_password_hash(password),
                    role=role, status=rules.USER_ACTIVE, created_at=now,
                    **{k: v for k, v in profile.items() if k in PROFILE_FIELDS})
        db.session.add(user)
        db.session.flush()
        notifications.welcome(user, now)
    logger.info('User %s registered as %s', user.username, user.role)
    return user


def authenticate(username, password):
    user = User.query.filter(func.lower(User.username) == (username or '').lower()).first()
    if user and check_password_hash(user.password, password or ''):
        return user
    return None


def _visible_user(actor, user_id):
    if user_id != actor.id and not policy.can(actor.role, 'user.view_all'):
        raise NotFound('User not found')
    return _get(User, user_id, 'User')


def get_user(actor, user_id):
    return _visible_user(actor, user_id)


def list_users(search=None, role=None, status=None):
    query = User.query
    if search:
        term = '%%%s%%' % search
        query = query.filter(or_(User.username.ilike(term), User.email.ilike(term),
                                 User.first_name.ilike(term), User.last_name.ilike(term),
                                 User.student_number.ilike(term)))
    if role:
        query = query.filter_by(role=role)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(User.id).all()


def update_profile(actor, user_id, data):
    with atomic():
        user = _visible_user(actor, user_id)
        email = data.get('email')
        if email and email.lower() != user.email.lower():
            if User.query.filter(func.lower(User.email) == email.lower()).first():
                _refuse('Email already exists', code='email_taken')
            user.email = email
        for field in PROFILE_FIELDS:
            if field in data:
                setattr(user, field, data[field])
    return user


def change_password(actor, user_id, new_password, current_password=None):
    if not new_password or len(new_password) < 8:
        raise ValidationFailed('The new password must be at least 8 characters long')
    with atomic():
        user = _visible_user(actor, user_id)
        if user.id != actor.id:
            policy.ensure(actor, 'user.reset_password')
        elif not check_password_hash(user.password, current_password or ''):
            _refuse('Current password is incorrect')
        user.password = generate_password_hash(new_password)
    logger.info('Password changed for user %s', user.id)
    return user


def change_status(actor, user_id, status=None, now=None):
    """Set a user's account status; without ``status`` toggle active/suspended."""
    now = now or rules.utcnow()
    if status is not None and status not in rules.USER_STATUSES:
        raise ValidationFailed('Unknown status: %s' % status)
    with atomic():
        user = _get(User, user_id, 'User')
        if user.id == actor.id:
            _refuse('You cannot change your own status')
        old_status = user.status
        if status is None:
            status = rules.USER_SUSPENDED if old_status == rules.USER_ACTIVE else rules.USER_ACTIVE
        if status == old_status:
            _refuse('User is already %s' % status)
        user.status = status
        notifications.status_changed(user, old_status, status, now)
    logger.info('User %s status %s -> %s', user.id, old_status, status)
    return user


def change_role(actor, user_id, role, now=None):
    now = now or rules.utcnow()
    if role not in rules.ROLES:
        raise ValidationFailed('Unknown role: %s' % role)
    with atomic():
        user = _get(User, user_id, 'User')
        if user.id == actor.id:
            _refuse('You cannot change your own role')
        if user.role == role:
            _refuse('User already has the role %s' % role)
        old_role = user.role
        user.role = role
        notifications.role_changed(user, old_role, role, actor, now)
    logger.info('User %s role %s -> %s', user.id, old_role, role)
    return user


def delete_user(actor, user_id):
    with atomic():
        user = _get(User, user_id, 'User')
        if user.id == actor.id:
            _refuse('You cannot delete your own account')
        if Loan.query.filter_by(user_id=user.id).count() or Sanction.query.filter_by(user_id=user.id).count():
            _refuse('User has loan or sanction history, deactivate the account instead')
        if Sanction.query.filter(or_(Sanction.applied_by == user.id, Sanction.lifted_by == user.id)).count():
            _refuse('User has applied or lifted sanctions, deactivate the account instead')
        queued = {r.book_id for r in Reservation.query.filter_by(user_id=user.id,
                                                                 status=rules.RESERVATION_ACTIVE)}
        Reservation.query.filter_by(user_id=user.id).delete()
        for book_id in queued:
            _renumber(book_id)
        db.session.delete(user)
    logger.info('User %s deleted', user_id)


# Catalog

def list_books(search=None, category_id=None, author=None, year=None, available_only=False):
    query = Book.query
    if search:
        term = '%%%s%%' % search
        query = query.filter(or_(Book.title.ilike(term), Book.author.ilike(term),
                                 Book.isbn.ilike(term), Book.summary.ilike(term)))
    if category_id:
        query = query.filter_by(category_id=category_id)
    if author:
        query = query.filter(Book.author.ilike('%%%s%%' % author))
    if year:
        query = query.filter_by(publication_year=year)
    if available_only:
        query = query.filter(Book.status == rules.BOOK_AVAILABLE, Book.available_copies > 0)
    return query.order_by(Book.title).all()


def popular_books(limit=10):
    return Book.query.order_by(Book.times_borrowed.desc(), Book.id).limit(limit).all()


def new_books(limit=10):
    return Book.query.order_by(Book.created_at.desc(), Book.id.desc()).limit(limit).all()


def get_book(book_id):
    return _get(Book, book_id, 'Book')


def _apply_book_fields(book, data):
    for field in BOOK_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == 'status' and value not in rules.BOOK_STATUSES:
            raise ValidationFailed('Unknown book status: %s' % value)
        if field == 'category_id' and value is not None:
            value = _get(Category, as_int(value, 'category_id'), 'Category').id
        if field == 'publication_year' and value is not None:
            value = as_int(value, 'publication_year')
        setattr(book, field, value)


def create_book(data, now=None):
    now = now or rules.utcnow()
    if not data.get('title'):
        raise ValidationFailed('title is required')
    total = as_int(data.get('total_copies', 1), 'total_copies', minimum=0)
    with atomic():
        if data.get('isbn') and Book.query.filter_by(isbn=str(data['isbn'])).first():
            _refuse('A book with this ISBN already exists', code='isbn_taken')
        book = Book(total_copies=total, available_copies=total, times_borrowed=0, created_at=now)
        _apply_book_fields(book, data)
        db.session.add(book)
    logger.info('Book %s added with %d copies', book.id, total)
    return book


def update_book(book_id, data):
    with atomic():
        book = _get(Book, book_id, 'Book')
        isbn = data.get('isbn')
        if isbn and isbn != book.isbn and Book.query.filter_by(isbn=str(isbn)).first():
            _refuse('A book with this ISBN already exists', code='isbn_taken')
        _apply_book_fields(book, data)
        if 'total_copies' in data:
            total = as_int(data['total_copies'], 'total_copies', minimum=0)
            available = book.available_copies + (total - book.total_copies)
            if available < 0:
                _refuse('%d copies are on loan, total cannot go below that'
                        % (book.total_copies - book.available_copies))
            book.total_copies = total
            book.available_copies = available
    return book


def delete_book(book_id):
    with atomic():
        book = _get(Book, book_id, 'Book')
        if Loan.query.filter_by(book_id=book.id).count():
            _refuse('Book has loan history, mark it unavailable instead')
        if book.reservation_count():
            _refuse('Book has active reservations')
        Reservation.query.filter_by(book_id=book.id).delete()
        db.session.delete(book)
    logger.info('Book %s deleted', book_id)


def list_categories():
    return Category.query.order_by(Category.name).all()


def create_category(data):
    if not data.get('name') or not data.get('code'):
        raise ValidationFailed('name and code are required')
    with atomic():
        if Category.query.filter_by(code=data['code']).first():
            _refuse('Category code already exists', code='code_taken')
        category = Category(name=data['name'], code=data['code'], description=data.get('description'))
        db.session.add(category)
    return category


def book_queue(book_id, now=None):
    """Active reservations of a book in queue order, stale ones expired first."""
    now = now or rules.utcnow()
    with atomic():
        book = _get(Book, book_id, 'Book')
        _expire_reservations(now, book_id=book.id)
    return book.active_reservations()


def import_books_csv(source, now=None):
    """Load books from a CSV with Title, Author, ISBN, Copies (and optional Category code).

    A row whose ISBN is already catalogued adds its copies to the existing book.
    """
    now = now or rules.utcnow()
    try:
        df = pd.read_csv(source, dtype={'ISBN': str})
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ValidationFailed('Could not read CSV: %s' % e)
    missing = [c for c in CSV_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationFailed('Missing CSV columns: %s' % ', '.join(missing))

    created = updated = 0
    with atomic():
        for index, row in df.iterrows():
            if pd.isna(row['Title']) or not str(row['Title']).strip():
                raise ValidationFailed('Row %d: Title is required' % (index + 2))
            if pd.isna(row['ISBN']) or not str(row['ISBN']).strip():
                raise ValidationFailed('Row %d: ISBN is required' % (index + 2))
            isbn = str(row['ISBN']).strip()
            try:
                copies = int(row['Copies'])
            except (TypeError, ValueError):
                raise ValidationFailed('Row %d: Copies must be an integer' % (index + 2))
            if copies < 0:
                raise ValidationFailed('Row %d: Copies cannot be negative' % (index + 2))
            category = None
            if 'Category' in df.columns and pd.notna(row['Category']):
                category = Category.query.filter_by(code=str(row['Category'])).first()
            existing_book = Book.query.filter_by(isbn=isbn).first()
            if existing_book:
                existing_book.total_copies += copies
                existing_book.available_copies += copies
                updated += 1
            else:
                db.session.add(Book(
                    title=str(row['Title']).strip(),
                    author=row['Author'] if pd.notna(row['Author']) else None,
                    isbn=isbn,
                    total_copies=copies,
                    available_copies=copies,
                    category_id=category.id if category else None,
                    times_borrowed=0,
                    created_at=now,
                ))
                # flush so a repeated ISBN further down the file finds this row
                db.session.flush()
                created += 1
    logger.info('CSV import: %d books created, %d updated', created, updated)
    return {'created': created, 'updated': updated}


# Loans

def _visible_loan(actor, loan_id):
    loan = _get(Loan, loan_id, 'Loan')
    if loan.user_id != actor.id and not policy.can(actor.role, 'loan.view_all'):
        raise NotFound('Loan not found')
    return loan


def get_loan(actor, loan_id):
    return _visible_loan(actor, loan_id)


def list_loans(actor, user_id=None, book_id=None, status=None, overdue=False, now=None):
    now = now or rules.utcnow()
    if not policy.can(actor.role, 'loan.view_all'):
        user_id = actor.id
    query = Loan.query
    if user_id:
        query = query.filter_by(user_id=user_id)
    if book_id:
        query = query.filter_by(book_id=book_id)
    if status:
        query = query.filter_by(status=status)
    if overdue:
        query = query.filter(Loan.status == rules.LOAN_ACTIVE, Loan.due_at < now)
    return query.order_by(Loan.borrowed_at.desc(), Loan.id.desc()).all()


def create_loan(actor, book_id, borrower_id=None, now=None):
    now = now or rules.utcnow()
    borrower_id = actor.id if borrower_id is None else borrower_id
    if borrower_id != actor.id and not policy.can(actor.role, 'loan.create_for_other'):
        raise Forbidden('Not allowed to borrow for another user')
    with atomic():
        borrower = _get(User, borrower_id, 'User')
        book = _get(Book, book_id, 'Book')
        already = Loan.query.filter_by(user_id=borrower.id, book_id=book.id,
                                       status=rules.LOAN_ACTIVE).first() is not None
        reason = rules.borrow_refusal(borrower.status, borrower.has_suspension(now),
                                      borrower.active_loans_count(), borrower.borrow_limit,
                                      book.is_available(), already)
        if reason:
            _refuse(reason)
        loan = Loan(user=borrower, book=book, borrowed_at=now,
                    due_at=now + timedelta(days=borrower.loan_duration_days),
                    status=rules.LOAN_ACTIVE, extension_count=0)
        book.check_out()
        db.session.add(loan)
        db.session.flush()
        notifications.loan_confirmed(loan, now)
    logger.info('Loan %s: user %s borrowed book %s until %s', loan.id, borrower.id, book.id, loan.due_at)
    return loan


def extend_loan(actor, loan_id, days=None, now=None):
    now = now or rules.utcnow()
    days = rules.DEFAULT_EXTENSION_DAYS if days is None else as_int(
        days, 'days', rules.MIN_EXTENSION_DAYS, rules.MAX_EXTENSION_DAYS)
    with atomic():
        loan = _visible_loan(actor, loan_id)
        reason = rules.extension_refusal(loan.status, loan.due_at, loan.extension_count,
                                         loan.book.reservation_count(), now)
        if reason:
            _refuse(reason)
        loan.due_at = loan.due_at + timedelta(days=days)
        loan.extension_count += 1
        loan.reminded_at = None
    logger.info('Loan %s extended by %d day(s), extension %d', loan.id, days, loan.extension_count)
    return loan


def return_loan(actor, loan_id, now=None):
    """Close an active loan. Returns ``(loan, fine)``; ``fine`` is None when on time."""
    now = now or rules.utcnow()
    fine = None
    with atomic():
        loan = _get(Loan, loan_id, 'Loan')
        if loan.status != rules.LOAN_ACTIVE:
            _refuse('Loan is not active')
        days = loan.overdue_days(now)
        amount = rules.compute_fine(days, _setting('LIBRARY_FINE_PER_DAY', rules.FINE_PER_DAY),
                                    _setting('LIBRARY_MAX_FINE', None))
        if amount > 0:
            fine = Sanction(user_id=loan.user_id, loan=loan, type=rules.FINE, amount=amount,
                            reason='Returned %d day(s) late: "%s"' % (days, loan.book.title),
                            starts_at=now, status=rules.SANCTION_ACTIVE, applied_by=actor.id, notes='')
            db.session.add(fine)
            db.session.flush()
            notifications.sanction_applied(fine, now)
        loan.status = rules.LOAN_RETURNED
        loan.returned_at = now
        loan.book.check_in()
        _advance_queue(loan.book, now)
    logger.info('Loan %s returned, fine %s', loan.id, fine.amount if fine else 0)
    return loan, fine


def mark_lost(actor, loan_id, notes=None, now=None):
    """Close an active loan as lost; the copy is not put back on the shelf."""
    now = now or rules.utcnow()
    with atomic():
        loan = _get(Loan, loan_id, 'Loan')
        if loan.status != rules.LOAN_ACTIVE:
            _refuse('Loan is not active')
        loan.status = rules.LOAN_LOST
        loan.returned_at = now
        if notes:
            loan.notes = notes
        penalty = Sanction(user_id=loan.user_id, loan=loan, type=rules.FINE,
                           amount=_setting('LIBRARY_LOST_BOOK_PENALTY', rules.LOST_BOOK_PENALTY),
                           reason='Lost book: "%s"' % loan.book.title, starts_at=now,
                           status=rules.SANCTION_ACTIVE, applied_by=actor.id, notes='')
        db.session.add(penalty)
        db.session.flush()
        notifications.sanction_applied(penalty, now)
    logger.info('Loan %s marked lost, penalty %s', loan.id, penalty.amount)
    return loan, penalty


# Reservations

def _renumber(book_id):
    active = Reservation.query.filter_by(book_id=book_id, status=rules.RESERVATION_ACTIVE).all()
    for reservation, position in rules.queue_positions(active):
        reservation.position = position


def _advance_queue(book, now):
    """Tell the earliest waiting reader not yet told that a copy is back.

    The reservation stays active at its position; a librarian confirms it.
    """
    waiting = (Reservation.query.filter_by(book_id=book.id, status=rules.RESERVATION_ACTIVE,
                                           notified=False)
               .order_by(Reservation.position, Reservation.reserved_at, Reservation.id).first())
    if waiting is None:
        return None
    pickup_days = _setting('LIBRARY_PICKUP_WINDOW_DAYS', rules.PICKUP_WINDOW_DAYS)
    waiting.notified = True
    waiting.expires_at = max(waiting.expires_at, now + timedelta(days=pickup_days))
    notifications.book_available(waiting, now, pickup_days)
    logger.info('Reservation %s notified that book %s is available', waiting.id, book.id)
    return waiting


def _visible_reservation(actor, reservation_id):
    reservation = _get(Reservation, reservation_id, 'Reservation')
    if reservation.user_id != actor.id and not policy.can(actor.role, 'reservation.view_all'):
        raise NotFound('Reservation not found')
    return reservation


def get_reservation(actor, reservation_id):
    return _visible_reservation(actor, reservation_id)


def list_reservations(actor, user_id=None, book_id=None, status=None):
    if not policy.can(actor.role, 'reservation.view_all'):
        user_id = actor.id
    query = Reservation.query
    if user_id:
        query = query.filter_by(user_id=user_id)
    if book_id:
        query = query.filter_by(book_id=book_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Reservation.reserved_at.desc(), Reservation.id.desc()).all()


def create_reservation(actor, book_id, now=None):
    now = now or rules.utcnow()
    with atomic():
        book = _get(Book, book_id, 'Book')
        _expire_reservations(now, book_id=book.id)
        already = Reservation.query.filter_by(user_id=actor.id, book_id=book.id,
                                              status=rules.RESERVATION_ACTIVE).first() is not None
        reason = rules.reservation_refusal(
            book.is_available(), already, actor.active_reservations_count(),
            _setting('LIBRARY_MAX_ACTIVE_RESERVATIONS', rules.MAX_ACTIVE_RESERVATIONS))
        if reason:
            _refuse(reason)
        hold_days = _setting('LIBRARY_RESERVATION_HOLD_DAYS', rules.RESERVATION_HOLD_DAYS)
        reservation = Reservation(user_id=actor.id, book=book, reserved_at=now,
                                  expires_at=now + timedelta(days=hold_days),
                                  status=rules.RESERVATION_ACTIVE,
                                  position=book.reservation_count() + 1, notified=False)
        db.session.add(reservation)
        db.session.flush()
        notifications.reservation_recorded(reservation, now)
    logger.info('Reservation %s: user %s queued for book %s at %d',
                reservation.id, actor.id, book.id, reservation.position)
    return reservation


def cancel_reservation(actor, reservation_id, now=None):
    now = now or rules.utcnow()
    with atomic():
        reservation = _visible_reservation(actor, reservation_id)
        if reservation.status != rules.RESERVATION_ACTIVE:
            _refuse('Reservation cannot be cancelled')
        reservation.status = rules.RESERVATION_CANCELLED
        reservation.cancelled_at = now
        reservation.position = None
        _renumber(reservation.book_id)
        notifications.reservation_cancelled(reservation, now)
    logger.info('Reservation %s cancelled', reservation.id)
    return reservation


def confirm_reservation(actor, reservation_id, now=None):
    now = now or rules.utcnow()
    with atomic():
        reservation = _get(Reservation, reservation_id, 'Reservation')
        if reservation.status != rules.RESERVATION_ACTIVE:
            _refuse('Reservation cannot be confirmed')
        pickup_days = _setting('LIBRARY_PICKUP_WINDOW_DAYS', rules.PICKUP_WINDOW_DAYS)
        reservation.status = rules.RESERVATION_CONFIRMED
        reservation.confirmed_at = now
        reservation.expires_at = now + timedelta(days=pickup_days)
        reservation.notified = True
        reservation.position = None
        _renumber(reservation.book_id)
        notifications.reservation_ready(reservation, now)
    logger.info('Reservation %s confirmed by %s', reservation.id, actor.id)
    return reservation


def _expire_reservations(now, book_id=None):
    query = Reservation.query.filter(Reservation.status == rules.RESERVATION_ACTIVE,
                                     Reservation.expires_at < now)
    if book_id is not None:
        query = query.filter(Reservation.book_id == book_id)
    expired = query.all()
    books = set()
    for reservation in expired:
        reservation.status = rules.RESERVATION_EXPIRED
        reservation.position = None
        notifications.reservation_expired(reservation, now)
        books.add(reservation.book)
        logger.info('Reservation %s expired', reservation.id)
    for book in books:
        _renumber(book.id)
        if book.is_available():
            _advance_queue(book, now)
    return len(expired)


def expire_reservations(now=None):
    now = now or rules.utcnow()
    with atomic():
        return _expire_reservations(now)


# Sanctions

def _visible_sanction(actor, sanction_id):
    sanction = _get(Sanction, sanction_id, 'Sanction')
    if sanction.user_id != actor.id and not policy.can(actor.role, 'sanction.view_all'):
        raise NotFound('Sanction not found')
    return sanction


def get_sanction(actor, sanction_id):
    return _visible_sanction(actor, sanction_id)


def list_sanctions(actor, user_id=None, status=None, type=None):
    if not policy.can(actor.role, 'sanction.view_all'):
        user_id = actor.id
    query = Sanction.query
    if user_id:
        query = query.filter_by(user_id=user_id)
    if status:
        query = query.filter_by(status=status)
    if type:
        query = query.filter_by(type=type)
    return query.order_by(Sanction.starts_at.desc(), Sanction.id.desc()).all()


def create_sanction(actor, user_id, type, reason, amount=None, duration_days=None,
                    starts_at=None, loan_id=None, now=None):
    now = now or rules.utcnow()
    if type not in rules.SANCTION_TYPES:
        raise ValidationFailed('Unknown sanction type: %s' % type)
    if not reason:
        raise ValidationFailed('reason is required')
    amount = as_amount(amount, 'amount') if amount is not None else Decimal('0.00')
    if type == rules.FINE and amount <= 0:
        raise ValidationFailed('A fine needs a positive amount')
    starts_at = as_datetime(starts_at, 'starts_at') if starts_at else now
    if duration_days is not None:
        ends_at = starts_at + timedelta(days=as_int(duration_days, 'duration_days', 1, 365))
    elif type == rules.SUSPENSION:
        ends_at = starts_at + timedelta(days=_setting('LIBRARY_DEFAULT_SUSPENSION_DAYS',
                                                      rules.DEFAULT_SUSPENSION_DAYS))
    else:
        ends_at = None
    with atomic():
        user = _get(User, user_id, 'User')
        if loan_id is not None:
            loan = _get(Loan, loan_id, 'Loan')
            if loan.user_id != user.id:
                raise ValidationFailed('The loan does not belong to this user')
        sanction = Sanction(user_id=user.id, loan_id=loan_id, type=type, amount=amount,
                            reason=reason, starts_at=starts_at, ends_at=ends_at,
                            status=rules.SANCTION_ACTIVE, applied_by=actor.id, notes='')
        db.session.add(sanction)
        db.session.flush()
        notifications.sanction_applied(sanction, now)
    logger.info('Sanction %s (%s) applied to user %s by %s', sanction.id, type, user.id, actor.id)
    return sanction


def update_sanction(actor, sanction_id, reason=None, amount=None, duration_days=None, ends_at=None):
    with atomic():
        sanction = _get(Sanction, sanction_id, 'Sanction')
        if sanction.status != rules.SANCTION_ACTIVE:
            _refuse('Sanction cannot be modified')
        if reason:
            sanction.reason = reason
        if amount is not None:
            sanction.amount = as_amount(amount, 'amount')
        if duration_days is not None:
            sanction.ends_at = sanction.starts_at + timedelta(
                days=as_int(duration_days, 'duration_days', 1, 365))
        elif ends_at is not None:
            ends_at = as_datetime(ends_at, 'ends_at')
            if ends_at <= sanction.starts_at:
                raise ValidationFailed('ends_at must be after starts_at')
            sanction.ends_at = ends_at
        sanction.add_note('Modified by %s' % actor.full_name)
    return sanction


def lift_sanction(actor, sanction_id, reason=None, now=None):
    now = now or rules.utcnow()
    with atomic():
        sanction = _get(Sanction, sanction_id, 'Sanction')
        if sanction.status != rules.SANCTION_ACTIVE:
            _refuse('Sanction cannot be lifted')
        sanction.status = rules.SANCTION_LIFTED
        sanction.ends_at = now
        sanction.lifted_at = now
        sanction.lifted_by = actor.id
        note = 'Lifted by %s on %s' % (actor.full_name, now.strftime('%d/%m/%Y %H:%M'))
        if reason:
            note += ' - Reason: %s' % reason
        sanction.add_note(note)
        notifications.sanction_lifted(sanction, now)
    logger.info('Sanction %s lifted by %s', sanction.id, actor.id)
    return sanction


def pay_sanction(actor, sanction_id, amount=None, now=None):
    now = now or rules.utcnow()
    with atomic():
        sanction = _visible_sanction(actor, sanction_id)
        paid = sanction.amount if amount is None else as_amount(amount, 'amount')
        reason = rules.payment_refusal(sanction.type, sanction.status, sanction.amount, paid)
        if reason:
            _refuse(reason)
        sanction.status = rules.SANCTION_PAID
        sanction.paid_at = now
        sanction.add_note('Paid on %s - Amount: %s' % (now.strftime('%d/%m/%Y %H:%M'), paid))
        notifications.sanction_paid(sanction, paid, now)
    logger.info('Sanction %s paid (%s)', sanction.id, paid)
    return sanction


def extend_sanction(actor, sanction_id, days, reason=None, now=None):
    now = now or rules.utcnow()
    days = as_int(days, 'days', minimum=1)
    with atomic():
        sanction = _get(Sanction, sanction_id, 'Sanction')
        if sanction.status != rules.SANCTION_ACTIVE:
            _refuse('Sanction cannot be extended')
        sanction.ends_at = (sanction.ends_at or now) + timedelta(days=days)
        note = 'Extended by %d day(s)' % days
        if reason:
            note += ' - Reason: %s' % reason
        sanction.add_note(note)
        notifications.sanction_extended(sanction, days, reason, now)
    logger.info('Sanction %s extended by %d day(s)', sanction.id, days)
    return sanction


def _expire_sanctions(now):
    lapsed = Sanction.query.filter(Sanction.status == rules.SANCTION_ACTIVE,
                                   Sanction.ends_at.isnot(None),
                                   Sanction.ends_at < now).all()
    for sanction in lapsed:
        sanction.status = rules.SANCTION_EXPIRED
        logger.info('Sanction %s expired', sanction.id)
    return len(lapsed)


def expire_sanctions(now=None):
    now = now or rules.utcnow()
    with atomic():
        return _expire_sanctions(now)


# Notifications

def _own_notification(actor, notification_id):
    notification = db.session.get(Notification, notification_id)
    if notification is None or notification.user_id != actor.id:
        raise NotFound('Notification not found')
    return notification


def list_notifications(actor, unread_only=False):
    query = Notification.query.filter_by(user_id=actor.id)
    if unread_only:
        query = query.filter_by(read=False)
    return query.order_by(Notification.sent_at.desc(), Notification.id.desc()).all()


def mark_notification_read(actor, notification_id, now=None):
    now = now or rules.utcnow()
    with atomic():
        notification = _own_notification(actor, notification_id)
        notification.mark_read(now)
    return notification


def mark_notification_unread(actor, notification_id):
    with atomic():
        notification = _own_notification(actor, notification_id)
        notification.mark_unread()
    return notification


def mark_all_notifications_read(actor, now=None):
    now = now or rules.utcnow()
    with atomic():
        unread = Notification.query.filter_by(user_id=actor.id, read=False).all()
        for notification in unread:
            notification.mark_read(now)
    return len(unread)


def delete_notification(actor, notification_id):
    with atomic():
        db.session.delete(_own_notification(actor, notification_id))


def delete_read_notifications(actor):
    with atomic():
        return Notification.query.filter_by(user_id=actor.id, read=True).delete()


def send_notification(actor, user_id, title, message, type='info', priority=None, now=None):
    now = now or rules.utcnow()
    if not title or not message:
        raise ValidationFailed('title and message are required')
    if type not in notifications.TYPES:
        raise ValidationFailed('Unknown notification type: %s' % type)
    if priority is not None and priority not in notifications.PRIORITIES:
        raise ValidationFailed('Unknown priority: %s' % priority)
    with atomic():
        user = _get(User, user_id, 'User')
        notification = notifications.push(user.id, title, message, type, now, priority=priority,
                                          payload={'sent_by': actor.id})
    return notification


# Housekeeping

def _send_overdue_alerts(now):
    loans = Loan.query.filter(Loan.status == rules.LOAN_ACTIVE, Loan.due_at < now,
                              Loan.overdue_notified_at.is_(None)).all()
    rate = _setting('LIBRARY_FINE_PER_DAY', rules.FINE_PER_DAY)
    cap = _setting('LIBRARY_MAX_FINE', None)
    for loan in loans:
        notifications.overdue_alert(loan, now, rules.compute_fine(loan.overdue_days(now), rate, cap))
        loan.overdue_notified_at = now
    return len(loans)


def _send_due_reminders(now):
    within = _setting('LIBRARY_DUE_SOON_DAYS', rules.DUE_SOON_DAYS)
    loans = Loan.query.filter(Loan.status == rules.LOAN_ACTIVE, Loan.due_at >= now,
                              Loan.due_at <= now + timedelta(days=within),
                              Loan.reminded_at.is_(None)).all()
    for loan in loans:
        notifications.due_reminder(loan, now)
        loan.reminded_at = now
    return len(loans)


def sweep(now=None):
    """Apply every date-driven transition that is due.

    Nothing runs this on a timer; call it from ``flask sweep`` (cron) or the
    maintenance endpoint.
    """
    now = now or rules.utcnow()
    with atomic():
        counts = {
            'reservations_expired': _expire_reservations(now),
            'sanctions_expired': _expire_sanctions(now),
            'overdue_alerts': _send_overdue_alerts(now),
            'due_reminders': _send_due_reminders(now),
        }
    logger.info('Sweep at %s: %s', now.isoformat(), counts)
    return counts


def statistics(now=None):
    now = now or rules.utcnow()

    def by(column, model):
        return dict(db.session.query(column, func.count(model.id)).group_by(column).all())

    paid = (db.session.query(func.sum(Sanction.amount))
            .filter_by(type=rules.FINE, status=rules.SANCTION_PAID).scalar())
    unpaid = (db.session.query(func.sum(Sanction.amount))
              .filter_by(type=rules.FINE, status=rules.SANCTION_ACTIVE).scalar())
    return {
        'users': by(User.role, User),
        'books': Book.query.count(),
        'copies': {
            'total': db.session.query(func.sum(Book.total_copies)).scalar() or 0,
            'available': db.session.query(func.sum(Book.available_copies)).scalar() or 0,
        },
        'loans': by(Loan.status, Loan),
        'overdue_loans': Loan.query.filter(Loan.status == rules.LOAN_ACTIVE, Loan.due_at < now).count(),
        'reservations': by(Reservation.status, Reservation),
        'sanctions': by(Sanction.status, Sanction),
        'sanctions_by_type': by(Sanction.type, Sanction),
        'fines_paid': float(paid or 0),
        'fines_unpaid': float(unpaid or 0),
    }
