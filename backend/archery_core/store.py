from __future__ import annotations

import datetime as dt
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .bale import Bale

logger = logging.getLogger(__name__)

CURRENT_BALE = "current_bale"
APP_STATE = "app_state"
COMPLETED_ROUNDS = "completed_rounds"
PENDING_WRITES = "pending_writes"

USERS_COLLECTION = "users"
APP_STATES_COLLECTION = "appStates"
ROUNDS_COLLECTION = "completedRounds"

LOCAL_FILE_SUFFIX = "_local.json"


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def default_data_dir() -> Path:
    configured = os.getenv("ARCHERY_DATA_DIR", "").strip()
    if configured:
        return Path(configured)
    return Path(__file__).parent.parent / "data"


def scoped_namespace(namespace: str, user_id: Optional[str]) -> str:
    """Local namespace for one profile; the shared one when there is no user."""

    if not user_id:
        return namespace
    return f"{namespace}.{quote(user_id, safe='')}"


class RemoteDocumentStore:
    """Document store kept in a single Supabase table.

    Each row is ``(collection, key, document, updated_at)``, which gives the
    get/set-with-merge contract of a hosted document database over PostgREST.
    """

    def __init__(self) -> None:
        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.documents_table = os.getenv("SUPABASE_DOCUMENTS_TABLE", "scoring_documents")

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key and self.documents_table)

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        self._require_configuration()
        params = {
            "select": "document",
            "collection": f"eq.{collection}",
            "key": f"eq.{key}",
            "limit": 1,
        }
        with httpx.Client(timeout=10.0) as client:
            response = client.get(self._endpoint(), params=params, headers=self._headers(include_content_profile=False))
            response.raise_for_status()
            rows = response.json()

        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            document = rows[0].get("document")
            return document if isinstance(document, dict) else None
        return None

    def set(self, collection: str, key: str, document: Dict[str, Any], merge: bool = False) -> None:
        """Write ``document`` under ``collection/key``.

        With ``merge`` the top-level fields are laid over the stored document
        instead of replacing it.
        """

        self._require_configuration()
        payload = dict(document)
        if merge:
            existing = self.get(collection, key) or {}
            payload = {**existing, **payload}

        record = {
            "collection": collection,
            "key": key,
            "document": payload,
            "updated_at": _utc_now_iso(),
        }
        headers = self._headers("resolution=merge-duplicates,return=minimal")
        headers["Content-Type"] = "application/json"
        with httpx.Client(timeout=10.0) as client:
            response = client.post(
                self._endpoint(),
                params={"on_conflict": "collection,key"},
                json=[record],
                headers=headers,
            )
            response.raise_for_status()

    def list(self, collection: str, key_prefix: str | None = None) -> List[Dict[str, Any]]:
        """Rows of ``collection``, newest first, optionally limited to keys starting with ``key_prefix``."""

        self._require_configuration()
        params = {
            "select": "key,document,updated_at",
            "collection": f"eq.{collection}",
            "order": "updated_at.desc",
        }
        if key_prefix:
            params["key"] = f"like.{key_prefix}*"
        with httpx.Client(timeout=10.0) as client:
            response = client.get(self._endpoint(), params=params, headers=self._headers(include_content_profile=False))
            response.raise_for_status()
            rows = response.json()

        if not isinstance(rows, list):
            logger.warning("Supabase documents query returned unexpected payload: %s", type(rows))
            return []
        return [row for row in rows if isinstance(row, dict)]

    def _require_configuration(self) -> None:
        if not self.configured:
            raise RuntimeError("Supabase configuration is required for the remote document store")

    def _endpoint(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{self.documents_table}"

    def _headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers


class LocalStore:
    """On-device JSON fallback, one file per namespace."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or default_data_dir()

    def path_for(self, namespace: str) -> Path:
        return self.data_dir / f"{namespace}{LOCAL_FILE_SUFFIX}"

    def save(self, namespace: str, value: Any) -> bool:
        path = self.path_for(namespace)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(value, handle, indent=2, sort_keys=True)
        except (OSError, TypeError) as exc:
            logger.error("Failed to write local data store %s: %s", path, exc)
            return False
        return True

    def load(self, namespace: str) -> Any:
        path = self.path_for(namespace)
        try:
            if not path.exists():
                return None
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable local data store %s: %s", path, exc)
            return None

    def clear(self, namespace: str) -> None:
        path = self.path_for(namespace)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:  # pragma: no cover - logged for diagnosis
            logger.warning("Failed to remove local data store %s: %s", path, exc)

    def clear_all(self) -> None:
        if not self.data_dir.exists():
            return
        for path in self.data_dir.glob(f"*{LOCAL_FILE_SUFFIX}"):
            self.clear(path.name[: -len(LOCAL_FILE_SUFFIX)])

    def is_available(self) -> bool:
        availability_check = self.path_for("availability_check")
        if not self.save("availability_check", True):
            return False
        self.clear("availability_check")
        return not availability_check.exists()


@dataclass
class RestoredSession:
    view: str
    bale: Optional[Bale] = None
    source: str = "none"


class SessionPersistence:
    """Dual-write policy between the hosted store and the local fallback.

    Every write also lands in the local store under the profile's own
    namespace. When the hosted write fails the same document is queued for
    ``sync_pending``; the failure is logged and never raised. Last write
    wins, nothing is merged.
    """

    def __init__(self, remote: RemoteDocumentStore | None = None, local: LocalStore | None = None) -> None:
        self.remote = remote or RemoteDocumentStore()
        self.local = local or LocalStore()

    def save_bale(self, user_id: Optional[str], snapshot: Dict[str, Any]) -> str:
        self.local.save(scoped_namespace(CURRENT_BALE, user_id), snapshot)
        document = {"currentBale": snapshot, "lastUpdated": _utc_now_iso()}
        return self._write(USERS_COLLECTION, user_id, document, merge=True)

    def save_app_state(self, user_id: Optional[str], view: str, bale_id: Optional[str]) -> str:
        state = {"currentView": view, "baleId": bale_id, "lastUpdated": _utc_now_iso()}
        self.local.save(scoped_namespace(APP_STATE, user_id), state)
        return self._write(APP_STATES_COLLECTION, user_id, state, merge=True)

    def save_completed_round(self, user_id: Optional[str], record: Dict[str, Any]) -> str:
        """Archive a complete scorecard; a record with the same id is replaced."""

        round_id = str(record.get("id") or "")
        if not round_id:
            raise ValueError("Completed round requires an id")

        namespace = scoped_namespace(COMPLETED_ROUNDS, user_id)
        rounds = [item for item in self._local_rounds(namespace) if item.get("id") != round_id]
        rounds.append(record)
        self.local.save(namespace, rounds)

        key = f"{user_id}:{round_id}" if user_id else None
        return self._write(ROUNDS_COLLECTION, key, {**record, "ownerId": user_id})

    def completed_rounds(self, user_id: Optional[str]) -> List[Dict[str, Any]]:
        """Archived scorecards for a profile, most recently verified first."""

        by_id: Dict[str, Dict[str, Any]] = {
            str(item.get("id")): item for item in self._local_rounds(scoped_namespace(COMPLETED_ROUNDS, user_id))
        }
        if user_id and self.remote.configured:
            try:
                rows = self.remote.list(ROUNDS_COLLECTION, key_prefix=f"{user_id}:")
            except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                logger.warning("Supabase read of %s failed (%s); using local fallback", ROUNDS_COLLECTION, exc)
            else:
                for row in rows:
                    document = row.get("document")
                    if isinstance(document, dict):
                        by_id[str(document.get("id"))] = document

        rounds = [{key: value for key, value in item.items() if key != "ownerId"} for item in by_id.values()]
        return sorted(rounds, key=lambda item: item.get("verifiedAt") or item.get("completedAt") or "", reverse=True)

    def restore(self, user_id: Optional[str]) -> RestoredSession:
        """Pick the session to resume after a restart.

        A saved app state (view plus bale id) wins over a bare bale snapshot;
        with neither the scorer lands on setup.
        """

        app_state, state_source = self._read(APP_STATES_COLLECTION, user_id, APP_STATE)
        bale, bale_source = self._read_bale(user_id)

        if isinstance(app_state, dict) and app_state.get("currentView"):
            view = str(app_state["currentView"])
            wanted = app_state.get("baleId")
            if bale is not None and (not wanted or wanted == bale.bale_id):
                return RestoredSession(view=view, bale=bale, source=state_source)
            if view == "setup":
                return RestoredSession(view="setup", source=state_source)
            logger.info("Saved app state points at bale %s which could not be loaded", wanted)

        if bale is not None:
            return RestoredSession(view="scoring", bale=bale, source=bale_source)
        return RestoredSession(view="setup")

    def clear_session(self, user_id: Optional[str]) -> None:
        """Forget the profile's current bale before a new one starts."""

        self.local.clear(scoped_namespace(CURRENT_BALE, user_id))
        self.local.clear(scoped_namespace(APP_STATE, user_id))
        if user_id:
            self._dequeue(USERS_COLLECTION, user_id)
            self._dequeue(APP_STATES_COLLECTION, user_id)

    def sync_pending(self) -> Dict[str, Any]:
        """Push locally queued writes to the hosted store."""

        if not self.remote.configured:
            raise RuntimeError("Supabase configuration is required to sync local backlog")

        result: Dict[str, Any] = {"synced": 0, "remaining": 0, "errors": []}
        queued = self.local.load(PENDING_WRITES) or []
        if not isinstance(queued, list):
            queued = []

        remaining: List[Any] = []
        for item in queued:
            if not isinstance(item, dict) or not item.get("key") or not item.get("collection"):
                result["errors"].append("Skipping malformed entry in pending writes")
                continue
            try:
                self.remote.set(item["collection"], item["key"], item.get("document") or {}, merge=bool(item.get("merge", True)))
            except httpx.HTTPStatusError as exc:
                remaining.append(item)
                result["errors"].append(self._extract_supabase_detail(exc.response) or f"Supabase rejected sync: {exc}")
            except httpx.HTTPError as exc:
                remaining.append(item)
                result["errors"].append(f"Sync request failed: {exc}")
            else:
                result["synced"] += 1

        if remaining:
            self.local.save(PENDING_WRITES, remaining)
            result["remaining"] = len(remaining)
        else:
            self.local.clear(PENDING_WRITES)
        return result

    def _write(self, collection: str, key: Optional[str], document: Dict[str, Any], merge: bool = False) -> str:
        if not key:
            return "local"
        if not self.remote.configured:
            self._queue(collection, key, document, merge)
            return "local"

        try:
            self.remote.set(collection, key, document, merge=merge)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning("Supabase write to %s failed (%s); using local fallback", collection, exc)
            self._queue(collection, key, document, merge)
            return "local"
        # An older queued copy would overwrite this one on the next sync.
        self._dequeue(collection, key)
        return "remote"

    def _queue(self, collection: str, key: str, document: Dict[str, Any], merge: bool) -> None:
        queued = self._pending_without(collection, key)
        queued.append({"collection": collection, "key": key, "document": document, "merge": merge})
        self.local.save(PENDING_WRITES, queued)

    def _dequeue(self, collection: str, key: str) -> None:
        queued = self.local.load(PENDING_WRITES)
        if not isinstance(queued, list):
            return
        kept = self._pending_without(collection, key)
        if len(kept) == len(queued):
            return
        if kept:
            self.local.save(PENDING_WRITES, kept)
        else:
            self.local.clear(PENDING_WRITES)

    def _pending_without(self, collection: str, key: str) -> List[Any]:
        queued = self.local.load(PENDING_WRITES)
        if not isinstance(queued, list):
            return []
        # Only the newest document per key is worth replaying.
        return [item for item in queued if not (isinstance(item, dict) and item.get("collection") == collection and item.get("key") == key)]

    def _local_rounds(self, namespace: str) -> List[Dict[str, Any]]:
        stored = self.local.load(namespace)
        if not isinstance(stored, list):
            return []
        return [item for item in stored if isinstance(item, dict)]

    def _read(self, collection: str, user_id: Optional[str], namespace: str) -> tuple[Any, str]:
        document = self._read_remote(collection, user_id)
        if document is not None:
            return document, "remote"

        value = self.local.load(scoped_namespace(namespace, user_id))
        if value is not None:
            return value, "local"
        return None, "none"

    def _read_bale(self, user_id: Optional[str]) -> tuple[Optional[Bale], str]:
        document = self._read_remote(USERS_COLLECTION, user_id)
        if document is not None:
            bale = self._bale_from(document.get("currentBale"))
            if bale is not None:
                return bale, "remote"

        bale = self._bale_from(self.local.load(scoped_namespace(CURRENT_BALE, user_id)))
        if bale is not None:
            return bale, "local"
        return None, "none"

    def _read_remote(self, collection: str, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not (user_id and self.remote.configured):
            return None
        try:
            return self.remote.get(collection, user_id)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning("Supabase read of %s failed (%s); using local fallback", collection, exc)
            return None

    @staticmethod
    def _bale_from(snapshot: Any) -> Optional[Bale]:
        if not isinstance(snapshot, dict):
            return None
        try:
            return Bale.from_snapshot(snapshot)
        except ValueError as exc:
            logger.warning("Discarding unreadable bale snapshot: %s", exc)
            return None

    @staticmethod
    def _extract_supabase_detail(response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None
