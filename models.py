from decimal import Decimal

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin

import rules

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(100), unique=True, nullable=False)
    email = db.Column(db.String(150), unique=True, nullable=False)
    password = db.Column(db.String(200), nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    student_number = db.Column(db.String(30))  # only for borrowers
    phone = db.Column(db.String(30))
    role = db.Column(db.String(20), nullable=False, default=rules.BORROWER)  # borrower, librarian or administrator
    status = db.Column(db.String(20), nullable=False, default=rules.USER_ACTIVE)
    created_at = db.Column(db.DateTime, default=rules.utcnow)

    loans = db.relationship('Loan', backref='user', lazy=True)
    reservations = db.relationship('Reservation', backref='user', lazy=True)
    sanctions = db.relationship('Sanction', backref='user', lazy=True,
                                foreign_keys='Sanction.user_id')
    notifications = db.relationship('Notification', backref='user', lazy=True,
                                    cascade='all, delete-orphan')

    @property
    def full_name(self):
        name = ' '.join(part for part in (self.first_name, self.last_name) if part)
        return name or self.username

    @property
    def borrow_limit(self):
        return rules.borrow_limit(self.role)

    @property
    def loan_duration_days(self):
        return rules.loan_duration_days(self.role)

    def active_loans_count(self):
        return Loan.query.filter_by(user_id=self.id, status=rules.LOAN_ACTIVE).count()

    def active_reservations_count(self):
        return Reservation.query.filter_by(user_id=self.id, status=rules.RESERVATION_ACTIVE).count()

    def has_suspension(self, now):
        suspensions = Sanction.query.filter_by(user_id=self.id, type=rules.SUSPENSION,
                                               status=rules.SANCTION_ACTIVE)
        return any(rules.sanction_in_effect(s.status, s.ends_at, now) for s in suspensions)

    def can_borrow(self, now):
        return self.status == rules.USER_ACTIVE and not self.has_suspension(now)

    def unpaid_fines_total(self):
        fines = Sanction.query.filter_by(user_id=self.id, type=rules.FINE,
                                         status=rules.SANCTION_ACTIVE)
        return sum((s.amount for s in fines), Decimal(0))

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'student_number': self.student_number,
            'phone': self.phone,
            'role': self.role,
            'status': self.status,
            'created_at': _iso(self.created_at),
        }

    def summary(self, now):
        data = self.to_dict()
        data.update({
            'active_loans': self.active_loans_count(),
            'borrow_limit': self.borrow_limit,
            'loan_duration_days': self.loan_duration_days,
            'unpaid_fines': float(self.unpaid_fines_total()),
            'suspended': self.has_suspension(now),
            'can_borrow': self.can_borrow(now),
        })
        return data


class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=False)
    description = db.Column(db.Text)

    books = db.relationship('Book', backref='category', lazy=True)

    def book_count(self):
        return Book.query.filter_by(category_id=self.id).count()

    def available_book_count(self):
        return (Book.query.filter_by(category_id=self.id, status=rules.BOOK_AVAILABLE)
                .filter(Book.available_copies > 0).count())

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'description': self.description,
            'books': self.book_count(),
            'available_books': self.available_book_count(),
        }


class Book(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(100))
    isbn = db.Column(db.String(20), unique=True)
    publisher = db.Column(db.String(150))
    publication_year = db.Column(db.Integer)
    language = db.Column(db.String(40))
    summary = db.Column(db.Text)
    location = db.Column(db.String(60))  # shelf code
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=True)
    total_copies = db.Column(db.Integer, default=1)
    available_copies = db.Column(db.Integer, default=1)
    status = db.Column(db.String(20), nullable=False, default=rules.BOOK_AVAILABLE)
    times_borrowed = db.Column(db.Integer, default=0)  # For "popular" listings
    created_at = db.Column(db.DateTime, default=rules.utcnow)

    loans = db.relationship('Loan', backref='book', lazy=True)
    reservations = db.relationship('Reservation', backref='book', lazy=True)

    def is_available(self):
        return rules.book_is_available(self.status, self.available_copies)

    def check_out(self):
        if not self.is_available():
            return False
        self.available_copies -= 1
        self.times_borrowed = (self.times_borrowed or 0) + 1
        return True

    def check_in(self):
        if self.available_copies >= self.total_copies:
            return False
        self.available_copies += 1
        return True

    def active_reservations(self):
        return (Reservation.query.filter_by(book_id=self.id, status=rules.RESERVATION_ACTIVE)
                .order_by(Reservation.position, Reservation.reserved_at, Reservation.id).all())

    def reservation_count(self):
        return Reservation.query.filter_by(book_id=self.id, status=rules.RESERVATION_ACTIVE).count()

    def active_loans_count(self):
        return Loan.query.filter_by(book_id=self.id, status=rules.LOAN_ACTIVE).count()

    def availability_rate(self):
        if not self.total_copies:
            return 0.0
        return self.available_copies / self.total_copies * 100

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'publisher': self.publisher,
            'publication_year': self.publication_year,
            'language': self.language,
            'summary': self.summary,
            'location': self.location,
            'category_id': self.category_id,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'status': self.status,
            'available': self.is_available(),
            'times_borrowed': self.times_borrowed,
        }


class Loan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=False)
    borrowed_at = db.Column(db.DateTime, default=rules.utcnow)
    due_at = db.Column(db.DateTime, nullable=False)
    returned_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=rules.LOAN_ACTIVE)
    extension_count = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    reminded_at = db.Column(db.DateTime, nullable=True)
    overdue_notified_at = db.Column(db.DateTime, nullable=True)

    sanctions = db.relationship('Sanction', backref='loan', lazy=True)

    def is_overdue(self, now):
        return rules.is_overdue(self.status, self.due_at, now)

    def overdue_days(self, now):
        return rules.overdue_days(self.status, self.due_at, now)

    def days_remaining(self, now):
        return rules.days_remaining(self.status, self.due_at, now)

    def is_due_soon(self, now, within_days=rules.DUE_SOON_DAYS):
        return rules.is_due_soon(self.status, self.due_at, now, within_days)

    def to_dict(self, now):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'borrowed_at': _iso(self.borrowed_at),
            'due_at': _iso(self.due_at),
            'returned_at': _iso(self.returned_at),
            'status': self.status,
            'extension_count': self.extension_count,
            'overdue': self.is_overdue(now),
            'overdue_days': self.overdue_days(now),
            'days_remaining': self.days_remaining(now),
            'due_soon': self.is_due_soon(now),
            'notes': self.notes,
        }


class Reservation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=False)
    reserved_at = db.Column(db.DateTime, default=rules.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=rules.RESERVATION_ACTIVE)
    position = db.Column(db.Integer, nullable=True)  # null once it leaves the queue
    notified = db.Column(db.Boolean, default=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    def estimated_wait(self):
        if self.status != rules.RESERVATION_ACTIVE or self.position is None:
            return None
        return rules.estimated_wait(self.position)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'reserved_at': _iso(self.reserved_at),
            'expires_at': _iso(self.expires_at),
            'status': self.status,
            'position': self.position,
            'notified': self.notified,
            'confirmed_at': _iso(self.confirmed_at),
            'cancelled_at': _iso(self.cancelled_at),
            'estimated_wait': self.estimated_wait(),
        }


class Sanction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    loan_id = db.Column(db.Integer, db.ForeignKey('loan.id'), nullable=True)
    type = db.Column(db.String(20), nullable=False)  # fine, suspension or warning
    amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    reason = db.Column(db.String(500), nullable=False)
    starts_at = db.Column(db.DateTime, default=rules.utcnow)
    ends_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=rules.SANCTION_ACTIVE)
    applied_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    lifted_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    lifted_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, default='')

    def is_in_effect(self, now):
        return rules.sanction_in_effect(self.status, self.ends_at, now)

    def has_lapsed(self, now):
        return rules.sanction_has_lapsed(self.status, self.ends_at, now)

    def add_note(self, line):
        self.notes = (self.notes + '\n' + line) if self.notes else line

    def to_dict(self, now):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'loan_id': self.loan_id,
            'type': self.type,
            'amount': float(self.amount or 0),
            'reason': self.reason,
            'starts_at': _iso(self.starts_at),
            'ends_at': _iso(self.ends_at),
            'status': self.status,
            'in_effect': self.is_in_effect(now),
            'lapsed': self.has_lapsed(now),
            'applied_by': self.applied_by,
            'lifted_by': self.lifted_by,
            'lifted_at': _iso(self.lifted_at),
            'paid_at': _iso(self.paid_at),
            'notes': self.notes,
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False, default='info')
    priority = db.Column(db.String(20), nullable=False, default='normal')
    read = db.Column(db.Boolean, default=False)
    sent_at = db.Column(db.DateTime, default=rules.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    def mark_read(self, now):
        if self.read:
            return False
        self.read = True
        self.read_at = now
        return True

    def mark_unread(self):
        if not self.read:
            return False
        self.read = False
        self.read_at = None
        return True

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'title': self.title,
            'message': self.message,
            'type': self.type,
            'priority': self.priority,
            'read': self.read,
            'sent_at': _iso(self.sent_at),
            'read_at': _iso(self.read_at),
            'payload': self.payload or {},
        }
