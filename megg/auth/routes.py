from datetime import datetime, timezone
from urllib.parse import urlencode

from flask import (
    Blueprint,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

from megg import db as db_module
from megg import mailer
from megg.auth import codes
from megg.auth.validation import email_error, password_error, registration_errors

auth_bp = Blueprint('auth', __name__)

WELCOME_TITLE = 'Welcome to MEGG'
WELCOME_MESSAGE = 'Your account has been created. Link a machine to start tracking inspections.'
PASSWORD_CHANGED_MESSAGE = 'Your password has been successfully updated.'


def _normalize_email(value: str | None) -> str:
    return (value or '').strip().lower()


def _start_session(user: dict) -> None:
    session.clear()
    session['user_id'] = user.get('id')
    session['username'] = user.get('username') or user.get('email')
    session['account_id'] = user.get('account_id')


def _find_user(identifier: str) -> tuple[dict | None, str | None]:
    if '@' in identifier:
        return db_module.fetch_user_by('email', _normalize_email(identifier))
    return db_module.fetch_user_by('username', identifier)


def _is_permission_error(message: str | None) -> bool:
    text = (message or '').lower()
    return 'permission denied' in text or '42501' in text


def _storage_failure(message: str) -> tuple[dict, int]:
    current_app.logger.error("User lookup failed: %s", message)
    if _is_permission_error(message):
        return {
            'error': 'Permission denied while accessing user records.',
            'code': 'permission-denied',
        }, 403
    return {
        'error': 'Failed to send reset email',
        'code': 'GENERAL_ERROR',
        'details': message,
    }, 500


def _send_verification_code(user: dict) -> None:
    """Store a fresh one-time code on ``user`` and email it.

    Raises:
        mailer.MailerError: When the code cannot be stored or delivered.
    """

    code, expires_at = codes.generate_otp()
    _updated, error = db_module.update_user(
        user['id'],
        {'verification_otp': code, 'otp_expiry': expires_at.isoformat()},
    )
    if error:
        raise mailer.MailerError('GENERAL_ERROR', 'Failed to store verification code', 500, details=error)
    mailer.send_mail(
        user['email'],
        'Verify your MEGG account',
        render_template(
            'email/verification.html',
            code=code,
            minutes=int(codes.OTP_TTL.total_seconds() // 60),
            name=user.get('full_name') or user.get('username'),
        ),
        text=f"Your MEGG verification code is {code}.",
    )


@auth_bp.route('/', methods=['GET', 'POST'])
@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    if request.method == 'POST':
        identifier = (request.form.get('username') or '').strip()
        password = request.form.get('password') or ''

        user, error = _find_user(identifier) if identifier else (None, None)
        if error:
            current_app.logger.warning("Login lookup failed: %s", error)
            flash('Unable to reach the account service. Please try again.', 'warning')
        elif user and user.get('password_hash') and check_password_hash(user['password_hash'], password):
            if not user.get('verified'):
                session['pending_email'] = user.get('email')
                try:
                    _send_verification_code(user)
                    flash('Please verify your email address to continue.', 'info')
                except mailer.MailerError as exc:
                    flash(f'Could not send a verification code: {exc.message}', 'warning')
                return redirect(url_for('auth.verify'))
            _start_session(user)
            db_module.update_user(
                user['id'], {'last_login': datetime.now(timezone.utc).isoformat()}
            )
            return redirect(url_for('main.home'))
        else:
            flash('Invalid credentials.')
    return render_template('login.html')


@auth_bp.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('auth.login'))


@auth_bp.route('/register', methods=['GET', 'POST'])
def register():
    if request.method == 'GET':
        return render_template('register.html', errors={}, form={})

    form = request.form
    errors = registration_errors(form)
    email = _normalize_email(form.get('email'))
    username = (form.get('username') or '').strip()

    if not errors:
        existing, error = db_module.fetch_user_by('email', email)
        if error:
            flash('Unable to reach the account service. Please try again.', 'warning')
            return render_template('register.html', errors={}, form=form), 503
        if existing:
            errors['email'] = 'An account with this email already exists.'
        existing, _error = db_module.fetch_user_by('username', username)
        if existing:
            errors['username'] = 'This username is already taken.'
    if errors:
        flash('Please fix the highlighted errors.')
        return render_template('register.html', errors=errors, form=form), 400

    def exists(candidate: str) -> bool:
        found, lookup_error = db_module.account_id_exists(candidate)
        if lookup_error:
            raise codes.AccountIdUnavailable(lookup_error)
        return found

    try:
        account_id = codes.generate_unique_account_id(exists)
    except codes.AccountIdUnavailable as exc:
        current_app.logger.error("Account ID generation failed: %s", exc)
        flash('Unable to create your account right now. Please try again.', 'warning')
        return render_template('register.html', errors={}, form=form), 503

    user, error = db_module.insert_user(
        {
            'account_id': account_id,
            'username': username,
            'full_name': (form.get('full_name') or '').strip(),
            'email': email,
            'phone': (form.get('phone') or '').strip(),
            'password_hash': generate_password_hash(form.get('password')),
            'verified': False,
            'linked_machines': [],
        }
    )
    if error or not user:
        current_app.logger.error("Registration failed: %s", error)
        flash('Failed to save user data. Please try again.', 'warning')
        return render_template('register.html', errors={}, form=form), 500

    db_module.save_notification_settings(user['id'], db_module.DEFAULT_NOTIFICATION_SETTINGS)
    db_module.insert_notification(user['id'], WELCOME_TITLE, WELCOME_MESSAGE, 'welcome')

    session['pending_email'] = email
    try:
        _send_verification_code(user)
    except mailer.MailerError as exc:
        flash(f'Account created, but the verification email failed: {exc.message}', 'warning')
    return redirect(url_for('auth.verify'))


@auth_bp.route('/verify', methods=['GET', 'POST'])
def verify():
    email = _normalize_email(request.form.get('email') or session.get('pending_email'))
    if request.method == 'POST':
        user, error = db_module.fetch_user_by('email', email) if email else (None, None)
        if error:
            flash('Unable to reach the account service. Please try again.', 'warning')
        elif user and codes.verify_otp(
            request.form.get('code'), user.get('verification_otp'), user.get('otp_expiry')
        ):
            db_module.update_user(
                user['id'],
                {'verified': True, 'verification_otp': None, 'otp_expiry': None},
            )
            session.pop('pending_email', None)
            _start_session(user)
            return redirect(url_for('main.home'))
        else:
            flash('Invalid or expired verification code.')
    return render_template('verify.html', email=email)


@auth_bp.route('/api/send-verification', methods=['POST'])
def send_verification():
    if not mailer.email_configured():
        return jsonify({
            'error': 'Email service not configured. Please contact administrator to set up email service.',
            'code': 'EMAIL_NOT_CONFIGURED',
        }), 503

    body = request.get_json(silent=True) or {}
    email = _normalize_email(body.get('email'))
    message = email_error(email)
    if message:
        return jsonify({'error': message}), 400

    user, error = db_module.fetch_user_by('email', email)
    if error:
        payload, status = _storage_failure(error)
        return jsonify(payload), status
    if not user:
        return jsonify({'error': 'User not found'}), 404

    try:
        _send_verification_code(user)
    except mailer.MailerError as exc:
        return jsonify(exc.to_dict()), exc.status
    return jsonify({'success': True, 'message': 'Verification code sent'})


def _request_password_reset(email: str) -> tuple[dict, int]:
    if not mailer.email_configured():
        current_app.logger.error("Password reset requested but EMAIL_USER/EMAIL_PASSWORD are not set")
        return {
            'error': 'Email service not configured. Please contact administrator to set up email service.',
            'code': 'EMAIL_NOT_CONFIGURED',
        }, 503
    if not email:
        return {'error': 'Email is required'}, 400
    message = email_error(email)
    if message:
        return {'error': message}, 400

    user, error = db_module.fetch_user_by('email', email)
    if error:
        return _storage_failure(error)
    if not user:
        return {'error': 'User not found'}, 404

    token, token_hash, expires_at = codes.generate_reset_token()
    _updated, error = db_module.update_user(
        user['id'],
        {'reset_token_hash': token_hash, 'reset_token_expiry': expires_at.isoformat()},
    )
    if error:
        return _storage_failure(error)

    app_url = current_app.config.get('APP_URL')
    if not app_url:
        current_app.logger.error("APP_URL is not configured")
        return {
            'error': 'Server configuration error. APP_URL is missing.',
            'code': 'APP_URL_NOT_CONFIGURED',
        }, 500

    reset_url = f"{app_url.rstrip('/')}/reset-password?{urlencode({'token': token, 'email': email})}"
    try:
        mailer.send_mail(
            email,
            'Password Reset Request',
            render_template('email/reset_password.html', reset_url=reset_url),
            text=f"Reset your MEGG password: {reset_url}",
        )
    except mailer.MailerError as exc:
        return exc.to_dict(), exc.status
    return {'success': True, 'message': 'Password reset email sent successfully'}, 200


@auth_bp.route('/api/reset-password', methods=['POST'])
def api_reset_password():
    body = request.get_json(silent=True) or {}
    payload, status = _request_password_reset(_normalize_email(body.get('email')))
    return jsonify(payload), status


@auth_bp.route('/forgot-password', methods=['GET', 'POST'])
def forgot_password():
    if request.method == 'POST':
        payload, status = _request_password_reset(_normalize_email(request.form.get('email')))
        if status == 200:
            flash('Check your inbox for a password reset link.', 'success')
        else:
            flash(payload.get('error') or 'Failed to send reset email', 'warning')
    return render_template('forgot_password.html')


@auth_bp.route('/reset-password', methods=['GET', 'POST'])
def reset_password():
    token = request.values.get('token') or ''
    email = _normalize_email(request.values.get('email'))
    errors: dict[str, str] = {}

    if request.method == 'POST':
        password = request.form.get('password') or ''
        message = password_error(password, strict=True)
        if message:
            errors['password'] = message
        if request.form.get('confirm_password') != password:
            errors['confirm_password'] = 'Passwords do not match.'

        if not errors:
            user, error = db_module.fetch_user_by('email', email) if email else (None, None)
            if error:
                flash('Unable to reach the account service. Please try again.', 'warning')
            elif not user or not codes.verify_reset_token(
                token, user.get('reset_token_hash'), user.get('reset_token_expiry')
            ):
                flash('This reset link is invalid or has expired.')
            else:
                db_module.update_user(
                    user['id'],
                    {
                        'password_hash': generate_password_hash(password),
                        'reset_token_hash': None,
                        'reset_token_expiry': None,
                    },
                )
                db_module.insert_notification(
                    user['id'], 'Password Changed', PASSWORD_CHANGED_MESSAGE, 'security'
                )
                flash('Your password has been reset. Please sign in.', 'success')
                return redirect(url_for('auth.login'))

    return render_template('reset_password.html', token=token, email=email, errors=errors)
