import os

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from werkzeug.utils import secure_filename

from errors import ValidationFailed
import library
import policy
from policy import requires
import rules

api = Blueprint('api', __name__, url_prefix='/api')

ALLOWED_EXTENSIONS = {'csv'}


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def _actor():
    return current_user._get_current_object()


def _body():
    return request.get_json(silent=True) or {}


def _optional_int(value, field):
    if value in (None, ''):
        return None
    return library.as_int(value, field)


def _flag(name):
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


def _created(payload):
    return jsonify(payload), 201


# Catalog

@api.route('/books')
@login_required
def list_books():
    books = library.list_books(
        search=request.args.get('search'),
        category_id=_optional_int(request.args.get('category_id'), 'category_id'),
        author=request.args.get('author'),
        year=_optional_int(request.args.get('year'), 'year'),
        available_only=_flag('available'),
    )
    return jsonify([b.to_dict() for b in books])


@api.route('/books/popular')
@login_required
def popular_books():
    return jsonify([b.to_dict() for b in library.popular_books()])


@api.route('/books/new')
@login_required
def new_books():
    return jsonify([b.to_dict() for b in library.new_books()])


@api.route('/books/<int:book_id>')
@login_required
def show_book(book_id):
    book = library.get_book(book_id)
    data = book.to_dict()
    data['availability_rate'] = book.availability_rate()
    data['active_reservations'] = book.reservation_count()
    data['active_loans'] = book.active_loans_count()
    return jsonify(data)


@api.route('/books/<int:book_id>/queue')
@login_required
def book_queue(book_id):
    queue = library.book_queue(book_id)
    if policy.can(current_user.role, 'reservation.view_all'):
        return jsonify([r.to_dict() for r in queue])
    # readers only learn where they stand, not who is ahead
    return jsonify([{'position': r.position, 'mine': r.user_id == current_user.id} for r in queue])


@api.route('/books', methods=['POST'])
@requires('book.create')
def create_book():
    return _created(library.create_book(_body()).to_dict())


@api.route('/books/<int:book_id>', methods=['PUT'])
@requires('book.update')
def update_book(book_id):
    return jsonify(library.update_book(book_id, _body()).to_dict())


@api.route('/books/<int:book_id>', methods=['DELETE'])
@requires('book.delete')
def delete_book(book_id):
    library.delete_book(book_id)
    return '', 204


@api.route('/books/import', methods=['POST'])
@requires('book.import')
def import_books():
    # Check if the post request has the file part
    if 'file' not in request.files:
        raise ValidationFailed('No file part')
    file = request.files['file']
    if file.filename == '':
        raise ValidationFailed('No selected file')
    if not allowed_file(file.filename):
        raise ValidationFailed('Only .csv files are accepted')
    filename = secure_filename(file.filename)
    filepath = os.path.join(current_app.config['UPLOAD_FOLDER'], filename)
    file.save(filepath)
    return jsonify(library.import_books_csv(filepath))


@api.route('/categories')
@login_required
def list_categories():
    return jsonify([c.to_dict() for c in library.list_categories()])


@api.route('/categories', methods=['POST'])
@requires('category.create')
def create_category():
    return _created(library.create_category(_body()).to_dict())


# Loans

@api.route('/loans')
@login_required
def list_loans():
    now = rules.utcnow()
    loans = library.list_loans(
        _actor(),
        user_id=_optional_int(request.args.get('user_id'), 'user_id'),
        book_id=_optional_int(request.args.get('book_id'), 'book_id'),
        status=request.args.get('status'),
        overdue=_flag('overdue'),
        now=now,
    )
    return jsonify([l.to_dict(now) for l in loans])


@api.route('/loans/<int:loan_id>')
@login_required
def show_loan(loan_id):
    return jsonify(library.get_loan(_actor(), loan_id).to_dict(rules.utcnow()))


@api.route('/loans', methods=['POST'])
@requires('loan.create')
def create_loan():
    body = _body()
    book_id = _optional_int(body.get('book_id'), 'book_id')
    if book_id is None:
        raise ValidationFailed('book_id is required')
    loan = library.create_loan(_actor(), book_id, _optional_int(body.get('user_id'), 'user_id'))
    return _created(loan.to_dict(rules.utcnow()))


@api.route('/loans/<int:loan_id>/extend', methods=['PUT'])
@requires('loan.extend')
def extend_loan(loan_id):
    loan = library.extend_loan(_actor(), loan_id, _body().get('days'))
    return jsonify(loan.to_dict(rules.utcnow()))


@api.route('/loans/<int:loan_id>/return', methods=['PUT'])
@requires('loan.return')
def return_loan(loan_id):
    now = rules.utcnow()
    loan, fine = library.return_loan(_actor(), loan_id, now=now)
    return jsonify({
        'loan': loan.to_dict(now),
        'fine': fine.to_dict(now) if fine else None,
    })


@api.route('/loans/<int:loan_id>/lost', methods=['PUT'])
@requires('loan.mark_lost')
def mark_lost(loan_id):
    now = rules.utcnow()
    loan, penalty = library.mark_lost(_actor(), loan_id, _body().get('notes'), now=now)
    return jsonify({'loan': loan.to_dict(now), 'sanction': penalty.to_dict(now)})


# Reservations

@api.route('/reservations')
@login_required
def list_reservations():
    reservations = library.list_reservations(
        _actor(),
        user_id=_optional_int(request.args.get('user_id'), 'user_id'),
        book_id=_optional_int(request.args.get('book_id'), 'book_id'),
        status=request.args.get('status'),
    )
    return jsonify([r.to_dict() for r in reservations])


@api.route('/reservations/<int:reservation_id>')
@login_required
def show_reservation(reservation_id):
    return jsonify(library.get_reservation(_actor(), reservation_id).to_dict())


@api.route('/reservations', methods=['POST'])
@requires('reservation.create')
def create_reservation():
    book_id = _optional_int(_body().get('book_id'), 'book_id')
    if book_id is None:
        raise ValidationFailed('book_id is required')
    return _created(library.create_reservation(_actor(), book_id).to_dict())


@api.route('/reservations/<int:reservation_id>/cancel', methods=['PUT'])
@requires('reservation.cancel')
def cancel_reservation(reservation_id):
    return jsonify(library.cancel_reservation(_actor(), reservation_id).to_dict())


@api.route('/reservations/<int:reservation_id>/confirm', methods=['PUT'])
@requires('reservation.confirm')
def confirm_reservation(reservation_id):
    return jsonify(library.confirm_reservation(_actor(), reservation_id).to_dict())


# Sanctions

@api.route('/sanctions')
@login_required
def list_sanctions():
    now = rules.utcnow()
    sanctions = library.list_sanctions(
        _actor(),
        user_id=_optional_int(request.args.get('user_id'), 'user_id'),
        status=request.args.get('status'),
        type=request.args.get('type'),
    )
    return jsonify([s.to_dict(now) for s in sanctions])


@api.route('/sanctions/<int:sanction_id>')
@login_required
def show_sanction(sanction_id):
    return jsonify(library.get_sanction(_actor(), sanction_id).to_dict(rules.utcnow()))


@api.route('/sanctions', methods=['POST'])
@requires('sanction.create')
def create_sanction():
    body = _body()
    user_id = _optional_int(body.get('user_id'), 'user_id')
    if user_id is None:
        raise ValidationFailed('user_id is required')
    sanction = library.create_sanction(
        _actor(), user_id, body.get('type'), body.get('reason'),
        amount=body.get('amount'),
        duration_days=body.get('duration_days'),
        starts_at=body.get('starts_at'),
        loan_id=_optional_int(body.get('loan_id'), 'loan_id'),
    )
    return _created(sanction.to_dict(rules.utcnow()))


@api.route('/sanctions/<int:sanction_id>', methods=['PUT'])
@requires('sanction.update')
def update_sanction(sanction_id):
    body = _body()
    sanction = library.update_sanction(_actor(), sanction_id, reason=body.get('reason'),
                                       amount=body.get('amount'),
                                       duration_days=body.get('duration_days'),
                                       ends_at=body.get('ends_at'))
    return jsonify(sanction.to_dict(rules.utcnow()))


@api.route('/sanctions/<int:sanction_id>/lift', methods=['PUT'])
@requires('sanction.lift')
def lift_sanction(sanction_id):
    sanction = library.lift_sanction(_actor(), sanction_id, _body().get('reason'))
    return jsonify(sanction.to_dict(rules.utcnow()))


@api.route('/sanctions/<int:sanction_id>/pay', methods=['PUT'])
@requires('sanction.pay')
def pay_sanction(sanction_id):
    sanction = library.pay_sanction(_actor(), sanction_id, _body().get('amount'))
    return jsonify(sanction.to_dict(rules.utcnow()))


@api.route('/sanctions/<int:sanction_id>/extend', methods=['PUT'])
@requires('sanction.extend')
def extend_sanction(sanction_id):
    body = _body()
    if body.get('days') is None:
        raise ValidationFailed('days is required')
    sanction = library.extend_sanction(_actor(), sanction_id, body['days'], body.get('reason'))
    return jsonify(sanction.to_dict(rules.utcnow()))


@api.route('/sanctions/check-expired', methods=['POST'])
@requires('maintenance.sweep')
def check_expired_sanctions():
    return jsonify({'expired': library.expire_sanctions()})


# Notifications

@api.route('/notifications')
@login_required
def list_notifications():
    items = library.list_notifications(_actor(), unread_only=_flag('unread'))
    return jsonify([n.to_dict() for n in items])


@api.route('/notifications', methods=['POST'])
@requires('notification.send')
def send_notification():
    body = _body()
    user_id = _optional_int(body.get('user_id'), 'user_id')
    if user_id is None:
        raise ValidationFailed('user_id is required')
    notification = library.send_notification(_actor(), user_id, body.get('title'), body.get('message'),
                                             type=body.get('type', 'info'),
                                             priority=body.get('priority'))
    return _created(notification.to_dict())


@api.route('/notifications/<int:notification_id>/read', methods=['PUT'])
@login_required
def mark_notification_read(notification_id):
    return jsonify(library.mark_notification_read(_actor(), notification_id).to_dict())


@api.route('/notifications/<int:notification_id>/unread', methods=['PUT'])
@login_required
def mark_notification_unread(notification_id):
    return jsonify(library.mark_notification_unread(_actor(), notification_id).to_dict())


@api.route('/notifications/read-all', methods=['PUT'])
@login_required
def mark_all_notifications_read():
    return jsonify({'updated': library.mark_all_notifications_read(_actor())})


@api.route('/notifications/<int:notification_id>', methods=['DELETE'])
@login_required
def delete_notification(notification_id):
    library.delete_notification(_actor(), notification_id)
    return '', 204


@api.route('/notifications/read', methods=['DELETE'])
@login_required
def delete_read_notifications():
    return jsonify({'deleted': library.delete_read_notifications(_actor())})


# Users

@api.route('/users')
@requires('user.list')
def list_users():
    users = library.list_users(search=request.args.get('search'), role=request.args.get('role'),
                               status=request.args.get('status'))
    return jsonify([u.to_dict() for u in users])


@api.route('/users/<int:user_id>')
@login_required
def show_user(user_id):
    return jsonify(library.get_user(_actor(), user_id).summary(rules.utcnow()))


@api.route('/users', methods=['POST'])
@requires('user.create')
def create_user():
    body = _body()
    profile = {k: body[k] for k in library.PROFILE_FIELDS if k in body}
    user = library.register_user(body.get('username'), body.get('email'), body.get('password'),
                                 role=body.get('role', rules.BORROWER), **profile)
    return _created(user.to_dict())


@api.route('/users/<int:user_id>', methods=['PUT'])
@login_required
def update_user(user_id):
    return jsonify(library.update_profile(_actor(), user_id, _body()).to_dict())


@api.route('/users/<int:user_id>/password', methods=['PUT'])
@login_required
def change_password(user_id):
    body = _body()
    library.change_password(_actor(), user_id, body.get('new_password'), body.get('current_password'))
    return '', 204


@api.route('/users/<int:user_id>/toggle-status', methods=['PUT'])
@requires('user.toggle_status')
def toggle_status(user_id):
    return jsonify(library.change_status(_actor(), user_id, _body().get('status')).to_dict())


@api.route('/users/<int:user_id>/role', methods=['PUT'])
@requires('user.change_role')
def change_role(user_id):
    return jsonify(library.change_role(_actor(), user_id, _body().get('role')).to_dict())


@api.route('/users/<int:user_id>', methods=['DELETE'])
@requires('user.delete')
def delete_user(user_id):
    library.delete_user(_actor(), user_id)
    return '', 204


# Housekeeping

@api.route('/stats')
@requires('stats.view')
def stats():
    return jsonify(library.statistics())


@api.route('/maintenance/sweep', methods=['POST'])
@requires('maintenance.sweep')
def sweep():
    return jsonify(library.sweep())
