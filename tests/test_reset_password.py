from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from werkzeug.security import check_password_hash

from megg import mailer
from megg.auth import codes


@pytest.fixture
def configured(app_instance):
    app_instance.config["EMAIL_USER"] = "megg@example.com"
    app_instance.config["EMAIL_PASSWORD"] = "secret"
    app_instance.config["APP_URL"] = "https://megg.example.com/"
    return app_instance


@pytest.fixture
def outbox(configured, monkeypatch):
    sent = []

    def fake_send(to, subject, html, text=None):
        sent.append({"to": to, "subject": subject, "html": html, "text": text})

    monkeypatch.setattr(mailer, "send_mail", fake_send)
    return sent


def _user(**extra):
    row = {"id": "user-1", "email": "juan@example.com", "username": "juan"}
    row.update(extra)
    return row


def test_missing_email_configuration_returns_503(client, app_instance):
    app_instance.config["EMAIL_USER"] = None

    response = client.post("/api/reset-password", json={"email": "juan@example.com"})

    assert response.status_code == 503
    assert response.get_json()["code"] == "EMAIL_NOT_CONFIGURED"


@pytest.mark.parametrize("email", [None, "", "juan-at-example"])
def test_missing_or_malformed_email_returns_400(client, configured, email):
    response = client.post("/api/reset-password", json={"email": email})

    assert response.status_code == 400


def test_unknown_user_returns_404(client, outbox, fake_supabase):
    fake_supabase.tables["users"] = [_user()]

    response = client.post("/api/reset-password", json={"email": "other@example.com"})

    assert response.status_code == 404
    assert outbox == []


def test_missing_app_url_returns_500(client, outbox, configured, fake_supabase):
    fake_supabase.tables["users"] = [_user()]
    configured.config["APP_URL"] = None

    response = client.post("/api/reset-password", json={"email": "juan@example.com"})

    assert response.status_code == 500
    assert response.get_json()["code"] == "APP_URL_NOT_CONFIGURED"


def test_permission_errors_return_403(client, configured, fake_supabase):
    fake_supabase.fail_on["users"] = "permission denied for table users"

    response = client.post("/api/reset-password", json={"email": "juan@example.com"})

    assert response.status_code == 403
    assert response.get_json()["code"] == "permission-denied"


def test_other_lookup_errors_return_general_error(client, configured, fake_supabase):
    fake_supabase.fail_on["users"] = "socket closed"

    response = client.post("/api/reset-password", json={"email": "juan@example.com"})

    payload = response.get_json()
    assert response.status_code == 500
    assert payload["code"] == "GENERAL_ERROR"
    assert "socket closed" in payload["details"]


def test_smtp_failure_is_reported_with_code(client, configured, fake_supabase, monkeypatch):
    fake_supabase.tables["users"] = [_user()]

    def failing_send(*args, **kwargs):
        raise mailer.MailerError("SMTP_CONNECTION_FAILED", "Email service connection failed.", 500, details="refused")

    monkeypatch.setattr(mailer, "send_mail", failing_send)

    response = client.post("/api/reset-password", json={"email": "juan@example.com"})

    assert response.status_code == 500
    assert response.get_json() == {
        "error": "Email service connection failed.",
        "code": "SMTP_CONNECTION_FAILED",
        "details": "refused",
    }


def test_reset_request_stores_only_token_hash(client, outbox, fake_supabase):
    fake_supabase.tables["users"] = [_user()]

    response = client.post("/api/reset-password", json={"email": "Juan@Example.com"})

    assert response.status_code == 200
    assert response.get_json()["success"] is True
    link = outbox[0]["text"].split(": ", 1)[1]
    parsed = urlparse(link)
    assert parsed.netloc == "megg.example.com"
    assert parsed.path == "/reset-password"
    token = parse_qs(parsed.query)["token"][0]
    user = fake_supabase.tables["users"][0]
    assert token not in str(user)
    assert user["reset_token_hash"] == codes.hash_token(token)


def test_forgot_password_form_flashes_result(client, outbox, fake_supabase):
    fake_supabase.tables["users"] = [_user()]

    response = client.post("/forgot-password", data={"email": "juan@example.com"})

    assert "Check your inbox" in response.get_data(as_text=True)
    assert len(outbox) == 1


def _user_with_token(token, expires_in=timedelta(minutes=30)):
    return _user(
        password_hash="old",
        reset_token_hash=codes.hash_token(token),
        reset_token_expiry=(datetime.now(timezone.utc) + expires_in).isoformat(),
    )


def test_reset_page_sets_new_password(client, fake_supabase):
    fake_supabase.tables["users"] = [_user_with_token("tok")]

    response = client.post(
        "/reset-password",
        data={"token": "tok", "email": "juan@example.com", "password": "N3w!pass", "confirm_password": "N3w!pass"},
    )

    assert response.status_code == 302
    user = fake_supabase.tables["users"][0]
    assert check_password_hash(user["password_hash"], "N3w!pass")
    assert user["reset_token_hash"] is None
    assert fake_supabase.tables["notifications"][0]["message"] == "Your password has been successfully updated."


def test_reset_page_requires_strong_password(client, fake_supabase):
    fake_supabase.tables["users"] = [_user_with_token("tok")]

    response = client.post(
        "/reset-password",
        data={"token": "tok", "email": "juan@example.com", "password": "password1", "confirm_password": "password1"},
    )

    assert response.status_code == 200
    assert "uppercase" in response.get_data(as_text=True)
    assert fake_supabase.tables["users"][0]["password_hash"] == "old"


def test_reset_page_rejects_expired_token(client, fake_supabase):
    fake_supabase.tables["users"] = [_user_with_token("tok", expires_in=timedelta(minutes=-1))]

    response = client.post(
        "/reset-password",
        data={"token": "tok", "email": "juan@example.com", "password": "N3w!pass", "confirm_password": "N3w!pass"},
    )

    assert "invalid or has expired" in response.get_data(as_text=True)
    assert fake_supabase.tables["users"][0]["password_hash"] == "old"
