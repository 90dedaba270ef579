from flask import Blueprint, current_app, jsonify, render_template, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from megg import db as db_module
from megg import mailer
from megg.auth.validation import MIN_PASSWORD_LENGTH, phone_error
from megg.main.routes import login_required

profile_bp = Blueprint('profile', __name__)

# Columns a user may change from the profile page.  Email and account id are
# fixed after registration.
EDITABLE_FIELDS = ('full_name', 'username', 'phone', 'birthday', 'gender', 'address')
PUBLIC_FIELDS = (
    'id',
    'account_id',
    'username',
    'full_name',
    'email',
    'phone',
    'birthday',
    'gender',
    'address',
    'profile_image_url',
    'linked_machines',
    'verified',
    'created_at',
    'last_login',
)
IMAGE_TYPES = {'image/jpeg', 'image/png', 'image/webp', 'image/gif'}
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_MACHINE_ID_LENGTH = 64


def _public_profile(user: dict) -> dict:
    profile = {key: user.get(key) for key in PUBLIC_FIELDS}
    profile['linked_machines'] = list(user.get('linked_machines') or [])
    return profile


def _current_user():
    """Return ``(user, response)``; ``response`` is set when the lookup failed."""

    user, error = db_module.fetch_user(session.get('user_id'))
    if error:
        current_app.logger.error("Profile lookup failed: %s", error)
        return None, (jsonify({'message': error}), 500)
    if not user:
        return None, (jsonify({'message': 'User not found'}), 404)
    return user, None


@profile_bp.route('/api/profile', methods=['GET', 'POST'])
@login_required
def profile():
    user, failure = _current_user()
    if failure:
        return failure
    if request.method == 'GET':
        return jsonify(_public_profile(user))

    body = request.get_json(silent=True) or {}
    changes = {
        key: (body[key].strip() if isinstance(body[key], str) else body[key])
        for key in EDITABLE_FIELDS
        if key in body
    }
    errors = {}
    if 'phone' in changes:
        message = phone_error(changes['phone'])
        if message:
            errors['phone'] = message
    if 'username' in changes:
        if not changes['username']:
            errors['username'] = 'Username is required.'
        elif changes['username'] != user.get('username'):
            existing, _error = db_module.fetch_user_by('username', changes['username'])
            if existing:
                errors['username'] = 'This username is already taken.'
    if 'full_name' in changes and not changes['full_name']:
        errors['full_name'] = 'Full name is required.'
    if errors:
        return jsonify({'message': 'Invalid profile data', 'errors': errors}), 400
    if not changes:
        return jsonify(_public_profile(user))

    updated, error = db_module.update_user(user['id'], changes)
    if error:
        current_app.logger.error("Profile update failed: %s", error)
        return jsonify({'message': error}), 500
    if 'username' in changes:
        session['username'] = changes['username']
    return jsonify(_public_profile({**user, **(updated or changes)}))


@profile_bp.route('/api/profile/password', methods=['POST'])
@login_required
def change_password():
    user, failure = _current_user()
    if failure:
        return failure

    body = request.get_json(silent=True) or {}
    current = body.get('current_password') or ''
    new = body.get('new_password') or ''
    if not user.get('password_hash') or not check_password_hash(user['password_hash'], current):
        return jsonify({'message': 'Current password is incorrect'}), 400
    if len(new) < MIN_PASSWORD_LENGTH:
        return jsonify(
            {'message': f'Password must be at least {MIN_PASSWORD_LENGTH} characters.'}
        ), 400
    if body.get('confirm_password') != new:
        return jsonify({'message': 'Passwords do not match.'}), 400

    _updated, error = db_module.update_user(
        user['id'], {'password_hash': generate_password_hash(new)}
    )
    if error:
        current_app.logger.error("Password update failed: %s", error)
        return jsonify({'message': error}), 500

    _notification, error = db_module.insert_notification(
        user['id'],
        'Password Changed',
        'Your password has been successfully updated.',
        'security',
    )
    if error:
        current_app.logger.warning("Password change notification failed: %s", error)
    return jsonify({'success': True, 'message': 'Password updated'})


@profile_bp.route('/api/profile/image', methods=['POST'])
@login_required
def profile_image():
    upload = request.files.get('image')
    if upload is None or not upload.filename:
        return jsonify({'message': 'No image uploaded'}), 400
    content_type = (upload.mimetype or '').lower()
    if content_type not in IMAGE_TYPES:
        return jsonify({'message': 'Unsupported image type'}), 400
    data = upload.read()
    if len(data) > MAX_IMAGE_BYTES:
        return jsonify({'message': 'Image must be 5 MB or smaller'}), 400

    user_id = session.get('user_id')
    url, error = db_module.upload_profile_image(user_id, data, content_type)
    if error:
        current_app.logger.error("Profile image upload failed for %s: %s", user_id, error)
        return jsonify({'message': error}), 500
    _updated, error = db_module.update_user(user_id, {'profile_image_url': url})
    if error:
        return jsonify({'message': error}), 500
    return jsonify({'success': True, 'profile_image_url': url})


@profile_bp.route('/api/profile/machines', methods=['GET', 'POST', 'DELETE'])
@login_required
def machines():
    user, failure = _current_user()
    if failure:
        return failure
    linked = [str(machine) for machine in (user.get('linked_machines') or [])]
    if request.method == 'GET':
        return jsonify({'machines': linked})

    body = request.get_json(silent=True) or {}
    machine_id = str(body.get('machine_id') or '').strip()
    if not machine_id or len(machine_id) > MAX_MACHINE_ID_LENGTH:
        return jsonify({'message': 'A valid machine_id is required'}), 400

    if request.method == 'POST':
        if machine_id in linked:
            return jsonify({'message': 'Machine already linked', 'machines': linked}), 409
        linked.append(machine_id)
    else:
        if machine_id not in linked:
            return jsonify({'message': 'Machine not linked'}), 404
        linked.remove(machine_id)

    _updated, error = db_module.update_user(user['id'], {'linked_machines': linked})
    if error:
        current_app.logger.error("Machine link update failed: %s", error)
        return jsonify({'message': error}), 500
    return jsonify({'machines': linked})


@profile_bp.route('/api/settings/notifications', methods=['GET', 'POST'])
@login_required
def notification_settings():
    user_id = session.get('user_id')
    if request.method == 'GET':
        settings, error = db_module.fetch_notification_settings(user_id)
        if error:
            current_app.logger.warning("Using default notification settings: %s", error)
        return jsonify(settings)

    body = request.get_json(silent=True) or {}
    changes = {
        key: body[key]
        for key in db_module.DEFAULT_NOTIFICATION_SETTINGS
        if isinstance(body.get(key), bool)
    }
    if not changes:
        return jsonify({'message': 'No notification settings supplied'}), 400
    current, _error = db_module.fetch_notification_settings(user_id)
    merged = {**current, **changes}
    _saved, error = db_module.save_notification_settings(user_id, merged)
    if error:
        current_app.logger.error("Saving notification settings failed: %s", error)
        return jsonify({'message': error}), 500
    return jsonify(merged)


@profile_bp.route('/api/notifications', methods=['GET'])
@login_required
def notifications():
    items, error = db_module.fetch_notifications(session.get('user_id'))
    if error:
        return jsonify({'message': error}), 500
    return jsonify({'items': items})


@profile_bp.route('/api/notifications/token', methods=['POST'])
@login_required
def register_push_token():
    token = ((request.get_json(silent=True) or {}).get('token') or '').strip()
    if not token:
        return jsonify({'message': 'token is required'}), 400
    _saved, error = db_module.save_fcm_token(session.get('user_id'), token)
    if error:
        return jsonify({'message': error}), 500
    return jsonify({'success': True})


@profile_bp.route('/api/notifications/send', methods=['POST'])
@login_required
def send_notification():
    user, failure = _current_user()
    if failure:
        return failure

    body = request.get_json(silent=True) or {}
    title = body.get('title') or 'Notification'
    message = body.get('body') or 'You have a new notification'
    kind = body.get('type') or 'general'

    settings, _error = db_module.fetch_notification_settings(user['id'])
    if not settings.get('notifications_enabled'):
        return jsonify(
            {'success': False, 'error': 'Notifications are disabled for this user'}
        ), 403

    created = None
    if settings.get('in_app_notifications'):
        created, error = db_module.insert_notification(user['id'], title, message, kind)
        if error:
            current_app.logger.error("In-app notification failed: %s", error)
            return jsonify({'success': False, 'error': error}), 500

    emailed = False
    if settings.get('email_notifications') and user.get('email') and mailer.email_configured():
        try:
            mailer.send_mail(
                user['email'],
                title,
                render_template('email/notification.html', title=title, message=message),
                text=message,
            )
            emailed = True
        except mailer.MailerError as exc:
            current_app.logger.warning("Notification email to %s failed: %s", user['email'], exc)

    return jsonify(
        {
            'success': True,
            'notificationId': (created or {}).get('id'),
            'emailed': emailed,
        }
    )
