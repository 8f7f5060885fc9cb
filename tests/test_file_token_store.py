"""Tests for FileTokenStore durability -- the JSON journal backing.

Covers:
- put and revoke survive a restart (new instance on the same path)
- the journal is one JSON object keyed by token hash with epoch-millis fields
- a failed write rolls the in-memory change back and raises StoreUnavailableError
- no temp files are left behind after a failed write
- an unreadable journal refuses to load instead of starting empty
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import StoreUnavailableError
from auth.models import Token, TokenType
from auth.token_store import FileTokenStore, to_millis

T0 = datetime(2026, 3, 1, 8, 30, 0, 456000, tzinfo=timezone.utc)


def _token(token_hash: str, user_id: int = 3, ttl: timedelta = timedelta(hours=24)) -> Token:
    return Token(
        token_hash=token_hash,
        user_id=user_id,
        token_type=TokenType.SESSION,
        issued_at=T0,
        expires_at=T0 + ttl,
    )


@pytest.fixture
def journal(tmp_path):
    return tmp_path / "state" / "tokens.json"


class TestRestart:
    def test_put_survives_restart(self, journal) -> None:
        FileTokenStore(journal).put(_token("h1"))
        reloaded = FileTokenStore(journal).get("h1")
        assert reloaded is not None
        assert reloaded.user_id == 3
        assert reloaded.issued_at == T0
        assert reloaded.expires_at == T0 + timedelta(hours=24)

    def test_revoke_survives_restart(self, journal) -> None:
        store = FileTokenStore(journal)
        store.put(_token("h1"))
        store.revoke("h1")
        assert FileTokenStore(journal).get("h1").revoked is True

    def test_purge_survives_restart(self, journal) -> None:
        store = FileTokenStore(journal)
        store.put(_token("old", ttl=timedelta(minutes=1)))
        store.put(_token("new"))
        store.purge(T0 + timedelta(hours=1))
        reloaded = FileTokenStore(journal)
        assert reloaded.count() == 1
        assert reloaded.get("new") is not None

    def test_missing_file_starts_empty(self, journal) -> None:
        assert FileTokenStore(journal).count() == 0


class TestLayout:
    def test_keyed_by_hash_with_millis(self, journal) -> None:
        FileTokenStore(journal).put(_token("abc123"))
        data = json.loads(journal.read_text(encoding="utf-8"))
        assert list(data) == ["abc123"]
        record = data["abc123"]
        assert record["user_id"] == 3
        assert record["token_type"] == "session"
        assert record["issued_at"] == to_millis(T0)
        assert record["expires_at"] == to_millis(T0) + 24 * 3600 * 1000
        assert record["revoked"] is False


class TestWriteFailure:
    def _break_replace(self, monkeypatch) -> None:
        def fail(src, dst):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "replace", fail)

    def test_put_rolled_back(self, journal, monkeypatch) -> None:
        store = FileTokenStore(journal)
        self._break_replace(monkeypatch)
        with pytest.raises(StoreUnavailableError):
            store.put(_token("h1"))
        assert store.get("h1") is None
        assert store.count() == 0
        assert store.list_by_user(3) == []

    def test_revoke_rolled_back(self, journal, monkeypatch) -> None:
        store = FileTokenStore(journal)
        store.put(_token("h1"))
        self._break_replace(monkeypatch)
        with pytest.raises(StoreUnavailableError):
            store.revoke("h1")
        assert store.get("h1").revoked is False

    def test_purge_rolled_back(self, journal, monkeypatch) -> None:
        store = FileTokenStore(journal)
        store.put(_token("old", ttl=timedelta(minutes=1)))
        self._break_replace(monkeypatch)
        with pytest.raises(StoreUnavailableError):
            store.purge(T0 + timedelta(hours=1))
        assert store.get("old") is not None

    def test_no_temp_files_left(self, journal, monkeypatch) -> None:
        store = FileTokenStore(journal)
        store.put(_token("h1"))
        self._break_replace(monkeypatch)
        with pytest.raises(StoreUnavailableError):
            store.put(_token("h2"))
        assert [p.name for p in journal.parent.iterdir()] == ["tokens.json"]

    def test_file_unchanged_after_failure(self, journal, monkeypatch) -> None:
        store = FileTokenStore(journal)
        store.put(_token("h1"))
        before = journal.read_text(encoding="utf-8")
        self._break_replace(monkeypatch)
        with pytest.raises(StoreUnavailableError):
            store.put(_token("h2"))
        assert journal.read_text(encoding="utf-8") == before


class TestCorruptJournal:
    @pytest.mark.parametrize(
        "content",
        [
            "{not json",
            '{"h1": {"user_id": 1}}',
            '{"h1": {"user_id": 1, "token_type": "bogus", "issued_at": 0, "expires_at": 1}}',
        ],
    )
    def test_refuses_to_load(self, journal, content: str) -> None:
        journal.parent.mkdir(parents=True)
        journal.write_text(content, encoding="utf-8")
        with pytest.raises(StoreUnavailableError):
            FileTokenStore(journal)
