from flask import (
    Blueprint,
    render_template,
    session,
    redirect,
    url_for,
    abort,
    request,
    jsonify,
    current_app,
    send_file,
)
from functools import wraps
import io
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config.report import DEFAULT_TIMEZONE
from megg import db
from megg.cancellation import OperationCancelled, current_token
from megg.main import reports
from megg.main.exporters import EXPORT_FORMATS, ExportError, export_table
from megg.main.pdf_utils import PdfGenerationError
from megg.seed import SEED_ACCOUNT_ID, SEED_BATCH_ID, build_seed_documents

main_bp = Blueprint('main', __name__)


def _report_timezone():
    """Return the timezone used for report timestamps.

    Prefers the configured ``LOCAL_TIMEZONE`` (defaulting to Asia/Manila) and
    falls back to UTC if the zone cannot be loaded.
    """

    tz_name = current_app.config.get("LOCAL_TIMEZONE") or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError:
        current_app.logger.warning(
            "Timezone %s unavailable; falling back to UTC", tz_name
        )
    except Exception as exc:  # pragma: no cover - unexpected zoneinfo failures
        current_app.logger.warning(
            "Error loading timezone %s: %s; falling back to UTC", tz_name, exc
        )
    return timezone.utc


def _request_now() -> datetime:
    return datetime.now(timezone.utc)


def login_required(view):
    """Reject anonymous API calls with a JSON 401."""

    @wraps(view)
    def wrapped_view(**kwargs):
        if 'user_id' not in session:
            return jsonify({'message': 'Authentication required'}), 401
        return view(**kwargs)

    return wrapped_view


def _history_kind(kind: str) -> reports.HistoryKind:
    history_kind = reports.HISTORY_KINDS.get(kind)
    if history_kind is None:
        abort(404)
    return history_kind


def _source_arg() -> str:
    source = request.args.get('source') or 'inspection'
    if source not in reports.SOURCES:
        abort(400, description='Unknown source')
    return source


def _int_arg(name: str, default: int, *, maximum: int = 500) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return min(max(value, 1), maximum)


@main_bp.errorhandler(OperationCancelled)
def _handle_cancelled(exc):
    current_app.logger.warning("Report request abandoned: %s", exc)
    return jsonify({'message': str(exc), 'code': 'REQUEST_CANCELLED'}), 503


@main_bp.route('/home')
def home():
    if 'user_id' not in session:
        return redirect(url_for('auth.login'))
    return render_template(
        'home.html',
        username=session.get('username'),
        account_id=session.get('account_id'),
        kinds=list(reports.HISTORY_KINDS.values()),
    )


@main_bp.route('/api/overview')
@login_required
def overview():
    payload = reports.overview_view(
        session.get('user_id'),
        tz=_report_timezone(),
        now=_request_now(),
        cancel=current_token(),
    )
    return jsonify(payload)


@main_bp.route('/api/history/<kind>/logs')
@login_required
def history_logs(kind):
    history_kind = _history_kind(kind)
    filters = reports.LogFilters(
        day=request.args.get('date') or None,
        batch=request.args.get('batch') or None,
        category=request.args.get('category') or None,
        search=request.args.get('search') or None,
        range_name=request.args.get('range') or None,
    )
    try:
        payload, _records = reports.logs_view(
            history_kind,
            session.get('user_id'),
            filters,
            tz=_report_timezone(),
            page=_int_arg('page', 1, maximum=100_000),
            page_size=_int_arg('page_size', 25),
            source=_source_arg(),
            now=_request_now(),
            cancel=current_token(),
        )
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    return jsonify(payload)


@main_bp.route('/api/history/<kind>/statistics')
@login_required
def history_statistics(kind):
    history_kind = _history_kind(kind)
    try:
        payload = reports.statistics_view(
            history_kind,
            session.get('user_id'),
            request.args.get('range'),
            source=_source_arg(),
            now=_request_now(),
            cancel=current_token(),
        )
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    return jsonify(payload)


@main_bp.route('/api/history/<kind>/daily-summary')
@login_required
def history_daily_summary(kind):
    history_kind = _history_kind(kind)
    payload = reports.daily_summary_view(
        history_kind,
        session.get('user_id'),
        tz=_report_timezone(),
        source=_source_arg(),
        now=_request_now(),
        cancel=current_token(),
    )
    return jsonify(payload)


@main_bp.route('/api/history/<kind>/batches')
@login_required
def history_batches(kind):
    history_kind = _history_kind(kind)
    payload = reports.batches_view(
        history_kind,
        session.get('user_id'),
        tz=_report_timezone(),
        page=_int_arg('page', 1, maximum=100_000),
        page_size=_int_arg('page_size', 10),
        now=_request_now(),
        cancel=current_token(),
    )
    return jsonify(payload)


@main_bp.route('/api/history/<kind>/<view>/export')
@login_required
def export_history(kind, view):
    history_kind = _history_kind(kind)
    if view not in reports.EXPORT_VIEWS:
        abort(404)

    fmt = (request.args.get('format') or 'csv').lower()
    if fmt not in EXPORT_FORMATS:
        return jsonify({'message': 'Unsupported format. Choose csv, xlsx, pdf, docx or png.'}), 400

    include_images = (request.args.get('images') or '').lower() in {'1', 'true', 'yes'}
    tz = _report_timezone()
    now = _request_now()
    try:
        table, draw = reports.build_export(
            history_kind,
            view,
            session.get('user_id'),
            tz=tz,
            fmt=fmt,
            args=request.args.to_dict(),
            fetch_image=db.fetch_record_image if include_images else None,
            now=now,
            cancel=current_token(),
        )
        data = export_table(table, fmt, draw=draw, base_url=request.url_root)
    except PdfGenerationError as exc:
        return jsonify({'message': str(exc)}), 503
    except ExportError as exc:
        return jsonify({'message': str(exc)}), 400
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400

    stamp = now.astimezone(tz).strftime('%Y%m%d_%H%M')
    return send_file(
        io.BytesIO(data),
        mimetype=EXPORT_FORMATS[fmt],
        download_name=f"{kind}_{view}_{stamp}.{fmt}",
        as_attachment=True,
    )


@main_bp.route('/api/seed')
def seed():
    if not current_app.config.get('ENABLE_SEED'):
        abort(404)

    account_id = session.get('account_id') or SEED_ACCOUNT_ID
    batch, eggs = build_seed_documents(account_id, SEED_BATCH_ID)
    written, error = db.insert_seed_documents(batch, eggs)
    if error:
        current_app.logger.error("Seeding failed: %s", error)
        return jsonify({'success': False, 'error': error}), 500
    return jsonify(
        {'success': True, 'message': f"Dummy data seeded! {written} eggs added."}
    )
