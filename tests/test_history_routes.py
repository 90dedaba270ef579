import base64
import csv
import io
from datetime import datetime, timedelta, timezone

from docx import Document
from openpyxl import load_workbook

from megg.cancellation import CancellationToken
from megg.main import exporters, routes
from megg.main.pdf_utils import PdfGenerationError

PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
# 2:30 PM in Asia/Manila.
PINNED_NOW = datetime(2024, 3, 1, 6, 30, tzinfo=timezone.utc)


def _egg(index, quality, **extra):
    row = {
        "id": f"egg-{index}",
        "account_id": "MEGG-123456",
        "batch_id": "B-1",
        "machine_id": "M-1",
        "quality": quality,
        "size": "medium",
        "weight": 50,
        "created_at": (datetime.now(timezone.utc) - timedelta(minutes=index + 1)).isoformat(),
    }
    row.update(extra)
    return row


def _egg_at(index, quality, created_at, **extra):
    return _egg(index, quality, created_at=created_at.isoformat(), **extra)


def _pin_clock(monkeypatch, now=PINNED_NOW):
    monkeypatch.setattr(routes, "_request_now", lambda: now)


def _seed_user(fake_supabase, account_id="MEGG-123456"):
    fake_supabase.tables["users"] = [
        {"id": "user-1", "username": "tester", "account_id": account_id, "linked_machines": ["M-1"]}
    ]


def test_history_requires_login(client):
    response = client.get("/api/history/defect/statistics")

    assert response.status_code == 401


def test_statistics_aggregate_the_callers_account(login, fake_supabase):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg(1, "good"),
        _egg(2, "dirty"),
        _egg(3, "dirty"),
        _egg(4, "bad", account_id="MEGG-999999"),
    ]
    client = login()

    response = client.get("/api/history/defect/statistics?range=24h")

    assert response.status_code == 200
    metric = response.get_json()["metric"]
    assert metric["total"] == 3
    assert metric["counts"]["dirty"] == 2
    assert metric["percentages"] == {"good": 33, "dirty": 67, "cracked": 0, "bad": 0}
    assert metric["mostCommon"] == {"type": "dirty", "count": 2}
    assert metric["trend"] is None


def test_user_without_account_gets_zero_metrics(login, fake_supabase):
    _seed_user(fake_supabase, account_id=None)
    fake_supabase.tables["eggs"] = [_egg(1, "good")]
    client = login(account_id=None)

    payload = client.get("/api/history/defect/statistics").get_json()

    assert payload["metric"]["total"] == 0
    assert payload["metric"]["mostCommon"] is None
    assert "message" not in payload


def test_unknown_kind_and_range_are_rejected(login, fake_supabase):
    _seed_user(fake_supabase)
    client = login()

    assert client.get("/api/history/weight/statistics").status_code == 404
    assert client.get("/api/history/defect/statistics?range=1y").status_code == 400
    assert client.get("/api/history/defect/statistics?source=cloud").status_code == 400


def test_logs_are_filtered_and_paginated(login, fake_supabase):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [_egg(index, "cracked" if index % 3 == 0 else "good") for index in range(30)]
    client = login()

    payload = client.get("/api/history/defect/logs?range=24h&page=2&page_size=10").get_json()

    assert payload["pagination"]["totalItems"] == 30
    assert payload["pagination"]["page"] == 2
    assert len(payload["items"]) == 10
    assert payload["items"][0]["id"] == "egg-10"
    assert sum(payload["counts"].values()) == 30

    filtered = client.get("/api/history/defect/logs?category=cracked").get_json()
    assert filtered["pagination"]["totalItems"] == 10
    assert {item["quality"] for item in filtered["items"]} == {"cracked"}


def test_legacy_sort_logs_use_linked_machines(login, fake_supabase):
    _seed_user(fake_supabase)
    now = datetime.now(timezone.utc)
    fake_supabase.tables["weight_logs"] = [
        {"id": "w-1", "machine_id": "M-1", "size": "Extra Large", "weight": "61.2", "timestamp": now.isoformat()},
        {"id": "w-2", "machine_id": "M-9", "size": "small", "weight": 40, "timestamp": now.isoformat()},
    ]
    client = login()

    payload = client.get("/api/history/sort/logs?source=legacy").get_json()

    assert [item["id"] for item in payload["items"]] == ["w-1"]
    assert payload["items"][0]["size"] == "large"
    assert payload["counts"]["large"] == 1


def test_daily_summary_has_hourly_buckets(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg_at(1, "good", PINNED_NOW - timedelta(minutes=20)),
        _egg_at(2, "dirty", PINNED_NOW - timedelta(days=1, minutes=30)),
    ]
    _pin_clock(monkeypatch)
    client = login()

    payload = client.get("/api/history/defect/daily-summary").get_json()

    assert payload["date"] == "2024-03-01"
    assert len(payload["hourly"]) == 24
    assert payload["hourly"][14]["total"] == 1
    assert payload["hourly"][14]["good"] == 1
    assert sum(bucket["total"] for bucket in payload["hourly"]) == 1
    assert payload["metric"]["total"] == 1
    assert payload["yesterdayTotal"] == 1
    assert payload["weekTotal"] == 2
    assert payload["peakHour"] == "2 PM-4 PM"


def test_batches_view_summarizes_stats(login, fake_supabase):
    _seed_user(fake_supabase)
    fake_supabase.tables["batches"] = [
        {
            "id": "B-1",
            "account_id": "MEGG-123456",
            "created_at": datetime.now(timezone.utc).isoformat(),
            "stats": {"goodEggs": 8, "dirtyEggs": 2, "totalEggs": 10},
        }
    ]
    client = login()

    payload = client.get("/api/history/defect/batches").get_json()

    assert payload["overview"]["batchCount"] == 1
    assert payload["items"][0]["defectPercentage"] == 20.0
    assert payload["items"][0]["primaryDefect"] == "dirty"


def test_overview_returns_quality_and_size(login, fake_supabase):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [_egg(1, "good"), _egg(2, "bad")]
    client = login()

    payload = client.get("/api/overview").get_json()

    assert payload["quality"]["total"] == 2
    assert payload["quality"]["mostCommon"]["type"] == "bad"
    assert payload["sizes"]["counts"]["medium"] == 2
    assert len(payload["daily"]) == 7


def test_csv_export_downloads_attachment(login, fake_supabase):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [_egg(1, "good"), _egg(2, "dirty")]
    client = login()

    response = client.get("/api/history/defect/logs/export?format=csv")

    assert response.status_code == 200
    assert response.mimetype == "text/csv"
    disposition = response.headers["Content-Disposition"]
    assert "attachment" in disposition
    assert "defect_logs_" in disposition and disposition.endswith('.csv')
    lines = response.data.decode("utf-8-sig").splitlines()
    assert lines[6].startswith("Timestamp,Batch ID")
    assert len(lines) == 9


def test_unsupported_export_format_is_rejected(login, fake_supabase):
    _seed_user(fake_supabase)
    client = login()

    response = client.get("/api/history/defect/statistics/export?format=odt")

    assert response.status_code == 400


def test_pdf_export_returns_dependency_error(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    message = "Install Pango and Cairo"

    def _raise_pdf_error(*args, **kwargs):
        raise PdfGenerationError(message)

    monkeypatch.setattr(exporters, "render_html_to_pdf", _raise_pdf_error)
    client = login()

    response = client.get("/api/history/defect/statistics/export?format=pdf")

    assert response.status_code == 503
    assert response.get_json() == {"message": message}


def test_pdf_export_survives_one_failed_image(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg(index, "dirty", image_id=f"img-{index}") for index in range(3)
    ]
    fake_supabase.storage.files["images/B-1/img-0"] = PIXEL
    fake_supabase.storage.files["images/B-1/img-2"] = PIXEL
    fake_supabase.storage.failing.add("images/B-1/img-1")
    captured = {}

    def fake_render(html, base_url=None):
        captured["html"] = html
        return b"%PDF-1.7"

    monkeypatch.setattr(exporters, "render_html_to_pdf", fake_render)
    client = login()

    response = client.get("/api/history/defect/logs/export?format=pdf&images=1")

    assert response.status_code == 200
    assert response.data == b"%PDF-1.7"
    assert captured["html"].count("data:image/png;base64,") == 2
    assert captured["html"].count(exporters.IMAGE_PLACEHOLDER) == 1


def test_cancelled_request_returns_503(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [_egg(1, "good")]
    token = CancellationToken()
    token.cancel("closed")
    monkeypatch.setattr(routes, "current_token", lambda: token)
    client = login()

    response = client.get("/api/history/defect/statistics")

    assert response.status_code == 503
    assert response.get_json()["code"] == "REQUEST_CANCELLED"


def test_seed_is_disabled_by_default(client):
    assert client.get("/api/seed").status_code == 404


def test_seed_writes_batch_and_eggs(app_instance, login, fake_supabase):
    app_instance.config["ENABLE_SEED"] = True
    client = login()

    response = client.get("/api/seed")

    assert response.get_json() == {"success": True, "message": "Dummy data seeded! 26 eggs added."}
    assert len(fake_supabase.tables["eggs"]) == 26
    assert fake_supabase.tables["batches"][0]["stats"]["totalEggs"] == 26
    assert {egg["account_id"] for egg in fake_supabase.tables["eggs"]} == {"MEGG-123456"}


def _batch(**stats):
    return {
        "id": "B-1",
        "account_id": "MEGG-123456",
        "created_at": (PINNED_NOW - timedelta(hours=1)).isoformat(),
        "stats": stats,
    }


def _export_rows(response):
    return list(csv.reader(io.StringIO(response.data.decode("utf-8-sig"))))


def test_statistics_keep_unreadable_timestamps_under_now_policy(
    app_instance, login, fake_supabase, monkeypatch
):
    app_instance.config["INVALID_TIMESTAMP_POLICY"] = "now"
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg_at(1, "good", PINNED_NOW - timedelta(hours=2)),
        _egg(2, "dirty", created_at="garbage"),
    ]
    _pin_clock(monkeypatch)
    client = login()

    payload = client.get("/api/history/defect/statistics?range=24h").get_json()

    assert payload["metric"]["total"] == 2
    assert payload["metric"]["counts"]["dirty"] == 1
    assert payload["rejected"] == 0


def test_statistics_report_unreadable_timestamps_under_reject_policy(
    login, fake_supabase, monkeypatch
):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg_at(1, "good", PINNED_NOW - timedelta(hours=2)),
        _egg(2, "dirty", created_at="garbage"),
    ]
    _pin_clock(monkeypatch)
    client = login()

    payload = client.get("/api/history/defect/statistics?range=24h").get_json()

    assert payload["metric"]["total"] == 1
    assert payload["rejected"] == 1
    assert "skipped" in payload["message"]


def test_sort_batches_lead_with_sizes(login, fake_supabase):
    _seed_user(fake_supabase)
    fake_supabase.tables["batches"] = [
        _batch(goodEggs=8, dirtyEggs=2, smallEggs=1, mediumEggs=2, largeEggs=7, totalEggs=10)
    ]
    client = login()

    payload = client.get("/api/history/sort/batches").get_json()

    assert payload["kind"] == "sort"
    assert payload["items"][0]["sizeCounts"] == {"small": 1, "medium": 2, "large": 7}
    assert payload["items"][0]["mostCommonSize"] == "large"
    assert payload["overview"]["mostCommonSize"] == "large"


def test_sort_log_export_lists_size_and_weight(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg_at(1, "good", PINNED_NOW - timedelta(minutes=5), size="Extra Large", weight="61"),
        _egg_at(2, "good", PINNED_NOW - timedelta(minutes=10), size="small", weight=42.25),
    ]
    _pin_clock(monkeypatch)
    client = login()

    response = client.get("/api/history/sort/logs/export?format=csv")

    assert response.status_code == 200
    assert "sort_logs_20240301_1430.csv" in response.headers["Content-Disposition"]
    rows = _export_rows(response)
    assert rows[6] == ["Timestamp", "Batch ID", "Size", "Weight (g)", "Machine ID"]
    assert rows[7] == ["2024-03-01 14:25:00", "B-1", "large", "61.0", "M-1"]
    assert rows[8][2:4] == ["small", "42.2"]


def test_daily_summary_exports_as_xlsx(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["eggs"] = [
        _egg_at(1, "good", PINNED_NOW - timedelta(minutes=20)),
        _egg_at(2, "dirty", PINNED_NOW - timedelta(minutes=25)),
        _egg_at(3, "dirty", PINNED_NOW - timedelta(days=1)),
    ]
    _pin_clock(monkeypatch)
    client = login()

    response = client.get("/api/history/defect/daily-summary/export?format=xlsx")

    assert response.status_code == 200
    assert response.mimetype == exporters.EXPORT_FORMATS["xlsx"]
    sheet = load_workbook(io.BytesIO(response.data)).active
    values = {row[0]: row[1] for row in sheet.iter_rows(values_only=True) if row[0]}
    assert values["Total"] == "2"
    assert values["Most Common"] == "Dirty"
    assert values["Yesterday Total"] == "1"
    assert values["Week Total"] == "3"
    assert values["Peak Hour"] == "2 PM-4 PM"


def test_defect_batch_export_lists_each_batch(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["batches"] = [_batch(goodEggs=8, dirtyEggs=2, totalEggs=10)]
    _pin_clock(monkeypatch)
    client = login()

    response = client.get("/api/history/defect/batches/export?format=csv")

    assert response.status_code == 200
    rows = _export_rows(response)
    assert rows[6] == [
        "Batch Number", "Total Eggs", "Defects", "Defect Rate", "Primary Defect", "Time Range"
    ]
    assert rows[7][:5] == ["B-1", "10", "2", "20.0%", "Dirty"]
    assert rows[7][5] == "1:30:00 PM - 1:30:00 PM"


def test_sort_batch_export_as_docx_reports_sizes(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)
    fake_supabase.tables["batches"] = [
        _batch(goodEggs=8, dirtyEggs=2, smallEggs=1, mediumEggs=2, largeEggs=7, totalEggs=10)
    ]
    _pin_clock(monkeypatch)
    client = login()

    response = client.get("/api/history/sort/batches/export?format=docx")

    assert response.status_code == 200
    assert response.mimetype == exporters.EXPORT_FORMATS["docx"]
    document = Document(io.BytesIO(response.data))
    summary = {row.cells[0].text: row.cells[1].text for row in document.tables[0].rows}
    assert summary["Large"] == "7"
    assert summary["Most Common Size"] == "Large"
    assert "Total Defects" not in summary
    grid = document.tables[-1]
    assert [cell.text for cell in grid.rows[0].cells] == [
        "Batch Number", "Total Sort", "Small", "Medium", "Large", "Most Common Size", "Time Range"
    ]
    assert [cell.text for cell in grid.rows[1].cells][:6] == ["B-1", "10", "1", "2", "7", "Large"]


def test_export_error_is_a_client_error(login, fake_supabase, monkeypatch):
    _seed_user(fake_supabase)

    def _raise_export_error(*args, **kwargs):
        raise exporters.ExportError("Image exports require matplotlib to be installed.")

    monkeypatch.setattr(routes, "export_table", _raise_export_error)
    client = login()

    response = client.get("/api/history/defect/statistics/export?format=png")

    assert response.status_code == 400
    assert response.get_json() == {"message": "Image exports require matplotlib to be installed."}
