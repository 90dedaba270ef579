import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

os.environ.setdefault("SECRET_KEY", "test")
os.environ.setdefault("SUPABASE_URL", "http://localhost")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "service")

import megg as megg_module
from megg import create_app

# Column used to match rows on upsert; tables not listed always insert.
UPSERT_KEYS = {
    "notification_settings": "user_id",
    "fcm_tokens": "user_id",
}


class FakeQuery:
    def __init__(self, supabase, table_name):
        self.supabase = supabase
        self.table_name = table_name
        self._operation = None
        self._payload = None
        self._filters = []
        self._order = None
        self._range = None
        self._limit = None

    def select(self, columns="*", **kwargs):
        self._operation = "select"
        return self

    def insert(self, rows):
        self._operation = "insert"
        self._payload = rows
        return self

    def upsert(self, rows, **kwargs):
        self._operation = "upsert"
        self._payload = rows
        return self

    def update(self, changes):
        self._operation = "update"
        self._payload = changes
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, value):
        self._limit = value
        return self

    def _matches(self, row):
        return all(check(row) for check in self._filters)

    def _rows(self, payload):
        return [payload] if isinstance(payload, dict) else list(payload)

    def execute(self):
        self.supabase.calls.append((self.table_name, self._operation, self._range))
        if self.supabase.fail_on.get(self.table_name):
            raise RuntimeError(self.supabase.fail_on[self.table_name])
        table = self.supabase.tables.setdefault(self.table_name, [])

        if self._operation == "select":
            data = [dict(row) for row in table if self._matches(row)]
            if self._order:
                column, desc = self._order
                data.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
            if self._range:
                start, end = self._range
                data = data[start:end + 1]
            if self._limit is not None:
                data = data[: self._limit]
            return SimpleNamespace(data=data, count=len(data))

        if self._operation == "insert":
            inserted = []
            for row in self._rows(self._payload):
                new_row = dict(row)
                new_row.setdefault("id", f"fake-{len(table) + 1}")
                table.append(new_row)
                inserted.append(dict(new_row))
            return SimpleNamespace(data=inserted, count=len(inserted))

        if self._operation == "upsert":
            key = UPSERT_KEYS.get(self.table_name, "id")
            written = []
            for row in self._rows(self._payload):
                existing = next(
                    (item for item in table if key in row and item.get(key) == row[key]),
                    None,
                )
                if existing is not None:
                    existing.update(row)
                    written.append(dict(existing))
                else:
                    table.append(dict(row))
                    written.append(dict(row))
            return SimpleNamespace(data=written, count=len(written))

        if self._operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated, count=len(updated))

        return SimpleNamespace(data=None, count=None)


class FakeBucket:
    def __init__(self, storage, name):
        self.storage = storage
        self.name = name

    def download(self, path):
        if path in self.storage.failing:
            raise RuntimeError(f"download failed: {path}")
        try:
            return self.storage.files[path]
        except KeyError:
            raise RuntimeError(f"object not found: {path}") from None

    def upload(self, path, data, options=None):
        self.storage.files[path] = data
        self.storage.uploads.append((self.name, path, options))
        return SimpleNamespace(path=path)

    def get_public_url(self, path):
        return f"http://localhost/storage/v1/object/public/{self.name}/{path}"


class FakeStorage:
    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.failing: set[str] = set()
        self.uploads: list = []

    def from_(self, name):
        return FakeBucket(self, name)


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list = []
        self.fail_on: dict[str, str] = {}
        self.storage = FakeStorage()

    def table(self, name):
        return FakeQuery(self, name)


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def app_instance(monkeypatch, fake_supabase):
    monkeypatch.setattr(megg_module, "create_client", lambda url, key: fake_supabase)
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app_instance):
    return app_instance.test_client()


@pytest.fixture
def login(client):
    def _login(user_id="user-1", username="tester", account_id="MEGG-123456"):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id
            sess["username"] = username
            sess["account_id"] = account_id
        return client

    return _login
