from __future__ import annotations

from typing import Any, Dict, List, Tuple

import pytest

from archery_core import Bale
from archery_core import store as store_module
from archery_core.store import (
    APP_STATE,
    CURRENT_BALE,
    PENDING_WRITES,
    LocalStore,
    RemoteDocumentStore,
    SessionPersistence,
    scoped_namespace,
)


class _MemoryClient:
    """Stands in for ``httpx.Client`` against an in-memory documents table."""

    rows: Dict[Tuple[str, str], Dict[str, Any]] = {}
    requests: List[Dict[str, Any]] = []

    def __init__(self, *args, **kwargs) -> None:
        pass

    def __enter__(self) -> "_MemoryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean
        return None

    def get(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]):
        _MemoryClient.requests.append({"method": "GET", "endpoint": endpoint, "params": params})
        collection = params["collection"].split(".", 1)[1]
        key_filter = params.get("key", "")
        if key_filter.startswith("eq."):
            row = _MemoryClient.rows.get((collection, key_filter[3:]))
            payload = [{"document": row["document"]}] if row else []
        else:
            prefix = key_filter[5:].rstrip("*") if key_filter.startswith("like.") else ""
            payload = [
                {"key": key, "document": row["document"], "updated_at": row["updated_at"]}
                for (row_collection, key), row in _MemoryClient.rows.items()
                if row_collection == collection and key.startswith(prefix)
            ]
        request = store_module.httpx.Request("GET", endpoint)
        return store_module.httpx.Response(200, request=request, json=payload)

    def post(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]):
        _MemoryClient.requests.append({"method": "POST", "endpoint": endpoint, "params": params, "json": json, "headers": headers})
        for record in json:
            _MemoryClient.rows[(record["collection"], record["key"])] = record
        request = store_module.httpx.Request("POST", endpoint)
        return store_module.httpx.Response(201, request=request)


class _FailingClient:
    def __init__(self, *args, **kwargs) -> None:
        pass

    def __enter__(self) -> "_FailingClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean
        return None

    def get(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]):
        raise store_module.httpx.ConnectError("network unreachable")

    def post(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]):
        request = store_module.httpx.Request("POST", endpoint)
        response = store_module.httpx.Response(503, request=request, json={"message": "service unavailable"})
        raise store_module.httpx.HTTPStatusError("Service Unavailable", request=request, response=response)


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY", "SUPABASE_ANON_KEY", "SUPABASE_SCHEMA"):
        monkeypatch.delenv(name, raising=False)
    _MemoryClient.rows = {}
    _MemoryClient.requests = []
    yield


@pytest.fixture
def configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")


def _persistence(tmp_path) -> SessionPersistence:
    return SessionPersistence(RemoteDocumentStore(), LocalStore(data_dir=tmp_path))


def _bale() -> Bale:
    bale = Bale.start(2, [{"id": "1", "firstName": "John", "lastName": "Doe"}], created_by="coach-1")
    bale.set_arrow("1", 1, 0, "X")
    return bale


def test_remote_write_success(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    persistence = _persistence(tmp_path)
    snapshot = _bale().to_snapshot()

    assert persistence.save_bale("coach-1", snapshot) == "remote"

    stored = _MemoryClient.rows[("users", "coach-1")]["document"]
    assert stored["currentBale"] == snapshot
    assert "lastUpdated" in stored
    post = [item for item in _MemoryClient.requests if item["method"] == "POST"][0]
    assert post["params"] == {"on_conflict": "collection,key"}
    assert post["headers"]["Prefer"].startswith("resolution=merge-duplicates")

    # Local copy is kept as a backup even when the hosted write works.
    assert persistence.local.load(scoped_namespace(CURRENT_BALE, "coach-1")) == snapshot
    assert persistence.local.load(PENDING_WRITES) is None


def test_remote_merge_keeps_other_fields(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    remote = RemoteDocumentStore()
    remote.set("users", "coach-1", {"displayName": "Coach"})
    remote.set("users", "coach-1", {"currentBale": {"id": "b"}}, merge=True)

    assert remote.get("users", "coach-1") == {"displayName": "Coach", "currentBale": {"id": "b"}}


def test_remote_list_filters_by_key_prefix(monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    remote = RemoteDocumentStore()
    remote.set("completedRounds", "coach-1:r1", {"id": "r1"})
    remote.set("completedRounds", "coach-1:r2", {"id": "r2"})
    remote.set("completedRounds", "coach-2:r3", {"id": "r3"})
    remote.set("users", "coach-1", {"currentBale": None})

    assert sorted(row["key"] for row in remote.list("completedRounds")) == ["coach-1:r1", "coach-1:r2", "coach-2:r3"]
    assert sorted(row["key"] for row in remote.list("completedRounds", key_prefix="coach-1:")) == ["coach-1:r1", "coach-1:r2"]

    get = [item for item in _MemoryClient.requests if item["method"] == "GET"][-1]
    assert get["params"]["key"] == "like.coach-1:*"


def test_remote_requires_configuration() -> None:
    remote = RemoteDocumentStore()

    assert not remote.configured
    with pytest.raises(RuntimeError):
        remote.get("users", "coach-1")


def test_remote_failure_falls_back_to_local(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)
    snapshot = _bale().to_snapshot()

    assert persistence.save_bale("coach-1", snapshot) == "local"

    assert persistence.local.load(scoped_namespace(CURRENT_BALE, "coach-1")) == snapshot
    queued = persistence.local.load(PENDING_WRITES)
    assert len(queued) == 1
    assert queued[0]["collection"] == "users"
    assert queued[0]["key"] == "coach-1"
    assert queued[0]["document"]["currentBale"] == snapshot


def test_failed_writes_queue_latest_per_key(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)
    bale = _bale()

    persistence.save_bale("coach-1", bale.to_snapshot())
    bale.set_arrow("1", 1, 1, "9")
    persistence.save_bale("coach-1", bale.to_snapshot())

    queued = persistence.local.load(PENDING_WRITES)
    assert len(queued) == 1
    assert queued[0]["document"]["currentBale"]["archers"][0]["scores"][0] == ["X", "9", ""]


def test_without_user_writes_stay_local(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)

    assert persistence.save_bale(None, _bale().to_snapshot()) == "local"
    assert persistence.local.load(PENDING_WRITES) is None


def test_restore_prefers_app_state(tmp_path) -> None:
    persistence = _persistence(tmp_path)
    bale = _bale()
    persistence.save_bale(None, bale.to_snapshot())
    persistence.save_app_state(None, "scorecard", bale.bale_id)

    restored = persistence.restore(None)
    assert restored.view == "scorecard"
    assert restored.source == "local"
    assert restored.bale is not None
    assert restored.bale.archer("1").end(1).arrows == ("X", "", "")


def test_restore_bare_bale_resumes_scoring(tmp_path) -> None:
    persistence = _persistence(tmp_path)
    persistence.save_bale(None, _bale().to_snapshot())

    restored = persistence.restore(None)
    assert restored.view == "scoring"
    assert restored.bale is not None


def test_restore_defaults_to_setup(tmp_path) -> None:
    restored = _persistence(tmp_path).restore(None)

    assert restored.view == "setup"
    assert restored.bale is None


def test_restore_ignores_app_state_for_missing_bale(tmp_path) -> None:
    persistence = _persistence(tmp_path)
    persistence.local.save(APP_STATE, {"currentView": "scoring", "baleId": "bale_gone"})

    restored = persistence.restore(None)
    assert restored.view == "setup"
    assert restored.bale is None


def test_restore_reads_remote_first(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    persistence = _persistence(tmp_path)
    bale = _bale()
    persistence.save_bale("coach-1", bale.to_snapshot())
    persistence.local.clear(scoped_namespace(CURRENT_BALE, "coach-1"))

    restored = persistence.restore("coach-1")
    assert restored.view == "scoring"
    assert restored.source == "remote"
    assert restored.bale.bale_id == bale.bale_id


def test_clear_session(tmp_path) -> None:
    persistence = _persistence(tmp_path)
    persistence.save_bale(None, _bale().to_snapshot())
    persistence.save_app_state(None, "scoring", "bale_x")

    persistence.clear_session(None)

    assert persistence.local.load(CURRENT_BALE) is None
    assert persistence.local.load(APP_STATE) is None


def test_sync_pending_pushes_queue(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)
    snapshot = _bale().to_snapshot()
    persistence.save_bale("coach-1", snapshot)

    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    summary = persistence.sync_pending()

    assert summary == {"synced": 1, "remaining": 0, "errors": []}
    assert _MemoryClient.rows[("users", "coach-1")]["document"]["currentBale"] == snapshot
    assert not persistence.local.path_for(PENDING_WRITES).exists()


def test_sync_pending_keeps_failures(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)
    persistence.save_bale("coach-1", _bale().to_snapshot())

    summary = persistence.sync_pending()

    assert summary["synced"] == 0
    assert summary["remaining"] == 1
    assert summary["errors"]
    assert persistence.local.path_for(PENDING_WRITES).exists()


def test_sync_pending_requires_supabase(tmp_path) -> None:
    with pytest.raises(RuntimeError):
        _persistence(tmp_path).sync_pending()


def test_local_store_round_trip_and_unreadable_file(tmp_path) -> None:
    local = LocalStore(data_dir=tmp_path)

    assert local.is_available()
    assert local.save(APP_STATE, {"currentView": "setup"})
    assert local.load(APP_STATE) == {"currentView": "setup"}

    local.path_for(CURRENT_BALE).write_text("{not json")
    assert local.load(CURRENT_BALE) is None

    local.clear_all()
    assert local.load(APP_STATE) is None


def test_successful_write_drops_older_queued_copy(tmp_path, monkeypatch, configured) -> None:
    persistence = _persistence(tmp_path)
    old = _bale()
    new = _bale()

    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    assert persistence.save_bale("coach-1", old.to_snapshot()) == "local"

    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    assert persistence.save_bale("coach-1", new.to_snapshot()) == "remote"
    assert persistence.local.load(PENDING_WRITES) is None

    assert persistence.sync_pending() == {"synced": 0, "remaining": 0, "errors": []}
    assert _MemoryClient.rows[("users", "coach-1")]["document"]["currentBale"]["id"] == new.bale_id


def test_clear_session_drops_only_that_profiles_queue(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)
    persistence.save_bale("coach-1", _bale().to_snapshot())
    persistence.save_app_state("coach-1", "scoring", "bale_x")
    persistence.save_bale("coach-2", _bale().to_snapshot())

    persistence.clear_session("coach-1")

    queued = persistence.local.load(PENDING_WRITES)
    assert [(item["collection"], item["key"]) for item in queued] == [("users", "coach-2")]
    assert persistence.local.load(scoped_namespace(CURRENT_BALE, "coach-1")) is None
    assert persistence.local.load(scoped_namespace(CURRENT_BALE, "coach-2")) is not None


def test_profiles_keep_separate_local_backups(tmp_path) -> None:
    persistence = _persistence(tmp_path)
    first = _bale()
    second = Bale.start(3, [{"id": "9", "firstName": "Bob"}], created_by="coach-2")
    persistence.save_bale("coach-1", first.to_snapshot())
    persistence.save_bale("coach-2", second.to_snapshot())
    persistence.clear_session("coach-2")

    restored = persistence.restore("coach-1")
    assert restored.bale is not None
    assert restored.bale.bale_id == first.bale_id
    assert persistence.restore("coach-2").bale is None
    assert persistence.restore(None).bale is None


def test_scoped_namespace_is_file_safe() -> None:
    assert scoped_namespace(CURRENT_BALE, None) == CURRENT_BALE
    assert scoped_namespace(CURRENT_BALE, "../coach 1") == "current_bale...%2Fcoach%201"


def _complete_bale() -> Bale:
    bale = Bale.start(4, [{"id": "1", "firstName": "John", "lastName": "Doe"}], created_by="coach-1")
    for end_number in range(1, 13):
        for arrow in range(3):
            bale.set_arrow("1", end_number, arrow, "9")
    return bale


def test_completed_rounds_kept_locally(tmp_path) -> None:
    persistence = _persistence(tmp_path)
    bale = _complete_bale()
    record = bale.verify("1", "coach-1")

    assert persistence.save_completed_round("coach-1", record) == "local"
    assert persistence.save_completed_round("coach-1", record) == "local"

    rounds = persistence.completed_rounds("coach-1")
    assert len(rounds) == 1
    assert rounds[0]["totals"]["totalScore"] == 324
    assert persistence.completed_rounds("coach-2") == []


def test_completed_rounds_written_remotely(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _MemoryClient)
    persistence = _persistence(tmp_path)
    record = _complete_bale().verify("1", "coach-1")

    assert persistence.save_completed_round("coach-1", record) == "remote"

    stored = _MemoryClient.rows[("completedRounds", f"coach-1:{record['id']}")]["document"]
    assert stored["ownerId"] == "coach-1"

    # A fresh device without the local copy still sees the round.
    fresh = SessionPersistence(RemoteDocumentStore(), LocalStore(data_dir=tmp_path / "other"))
    rounds = fresh.completed_rounds("coach-1")
    assert [item["id"] for item in rounds] == [record["id"]]
    assert "ownerId" not in rounds[0]


def test_completed_rounds_survive_remote_failure(tmp_path, monkeypatch, configured) -> None:
    monkeypatch.setattr(store_module.httpx, "Client", _FailingClient)
    persistence = _persistence(tmp_path)
    record = _complete_bale().verify("1", "coach-1")

    assert persistence.save_completed_round("coach-1", record) == "local"

    queued = persistence.local.load(PENDING_WRITES)
    assert queued[0]["collection"] == "completedRounds"
    assert queued[0]["merge"] is False
    assert [item["id"] for item in persistence.completed_rounds("coach-1")] == [record["id"]]
