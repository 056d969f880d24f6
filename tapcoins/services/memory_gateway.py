"""
tapcoins.services.memory_gateway — In-Memory & JSON-File Stores
================================================================

Local stand-ins for the hosted document store:

* :class:`InMemoryGateway` keeps documents in dicts.  It can simulate an
  outage (``available = False`` or :meth:`InMemoryGateway.fail_next`) and
  records every applied update, which is what the tests assert against.
* :class:`JsonFileGateway` adds persistence to a single JSON file laid out
  as ``{"users": {...}, "leaderboard": {...}}``.
"""

from __future__ import annotations

import copy
import itertools
import json
import logging
import os
from pathlib import Path
from typing import Any

from tapcoins.engine.economy import UserProgress
from tapcoins.engine.leaderboard import LeaderboardEntry
from tapcoins.errors import PersistenceUnavailable, UserNotFound
from tapcoins.services.gateway import (
    IncrementalUpdate,
    PersistenceGateway,
    apply_update_to_document,
    progress_from_document,
    progress_to_document,
)

logger = logging.getLogger(__name__)


class InMemoryGateway(PersistenceGateway):
    """Dict-backed gateway.  Documents are deep-copied in and out."""

    name = "memory"

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.leaderboard: dict[str, dict[str, Any]] = {}
        self.updates: list[tuple[str, IncrementalUpdate]] = []
        self.available = True
        self._failures_left = 0
        self._revision = itertools.count(1)

    # ------------------------------------------------------------------
    # Outage simulation
    # ------------------------------------------------------------------
    def fail_next(self, count: int = 1) -> None:
        """Make the next *count* calls raise :class:`PersistenceUnavailable`."""
        self._failures_left = count

    def _check(self, operation: str) -> None:
        if not self.available:
            raise PersistenceUnavailable(operation, ConnectionError("store offline"))
        if self._failures_left > 0:
            self._failures_left -= 1
            raise PersistenceUnavailable(operation, ConnectionError("simulated failure"))

    def _changed(self) -> None:
        """Hook for subclasses that persist after every mutation."""

    def _commit(self, table: dict[str, dict[str, Any]], key: str, doc: dict[str, Any]) -> None:
        """Store *doc* under *key*, undoing it if :meth:`_changed` fails."""
        previous = table.get(key)
        table[key] = doc
        try:
            self._changed()
        except PersistenceUnavailable:
            if previous is None:
                del table[key]
            else:
                table[key] = previous
            raise

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    async def load_user(self, identity: str) -> UserProgress:
        self._check("load_user")
        doc = self.users.get(identity)
        if doc is None:
            raise UserNotFound(identity)
        return progress_from_document(copy.deepcopy(doc))

    async def create_user(self, progress: UserProgress) -> None:
        self._check("create_user")
        self._commit(self.users, progress.identity, progress_to_document(progress))

    async def apply_incremental_update(self, identity: str, update: IncrementalUpdate) -> None:
        self._check("apply_incremental_update")
        staged = self._staged_user(identity)
        apply_update_to_document(staged, update)
        self._commit(self.users, identity, staged)
        self.updates.append((identity, update))

    async def touch_user(
        self, identity: str, *, display_name: str, username: str | None, at: float,
    ) -> None:
        self._check("touch_user")
        staged = self._staged_user(identity)
        staged["displayName"] = display_name
        if username:
            staged["username"] = username
        staged["lastActive"] = at
        self._commit(self.users, identity, staged)

    async def refresh_energy(self, identity: str, *, energy: int, at: float) -> None:
        self._check("refresh_energy")
        staged = self._staged_user(identity)
        staged["energy"] = energy
        staged["lastEnergyRefresh"] = at
        self._commit(self.users, identity, staged)

    async def credit_referral(self, referral_code: str) -> str | None:
        self._check("credit_referral")
        for identity, doc in self.users.items():
            if doc.get("referralCode") == referral_code:
                staged = copy.deepcopy(doc)
                staged["referralCount"] = int(doc.get("referralCount") or 0) + 1
                self._commit(self.users, identity, staged)
                return identity
        return None

    def _staged_user(self, identity: str) -> dict[str, Any]:
        doc = self.users.get(identity)
        if doc is None:
            raise UserNotFound(identity)
        return copy.deepcopy(doc)

    # ------------------------------------------------------------------
    # Leaderboard
    # ------------------------------------------------------------------
    async def upsert_leaderboard_entry(
        self,
        identity: str,
        *,
        coins: int,
        total_taps: int,
        display_name: str,
        username: str | None,
    ) -> None:
        self._check("upsert_leaderboard_entry")
        row = {
            "coins": coins,
            "totalTaps": total_taps,
            "displayName": display_name,
            "username": username,
            "revision": next(self._revision),
        }
        self._commit(self.leaderboard, identity, row)

    async def query_top_leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        self._check("query_top_leaderboard")
        rows = sorted(
            self.leaderboard.items(),
            key=lambda item: (-item[1]["coins"], item[1]["revision"]),
        )[:limit]
        return [
            LeaderboardEntry(
                identity=identity,
                display_name=row.get("displayName") or "",
                username=row.get("username"),
                coins=int(row["coins"]),
                total_taps=int(row.get("totalTaps") or 0),
                position=position,
            )
            for position, (identity, row) in enumerate(rows, start=1)
        ]


class JsonFileGateway(InMemoryGateway):
    """:class:`InMemoryGateway` mirrored to a JSON file after every write.

    The file is replaced atomically (write to ``*.tmp`` then rename), so a
    crash mid-write leaves the previous document intact.
    """

    name = "file"

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)
        if self.path.exists():
            with open(self.path, encoding="utf-8") as fh:
                data = json.load(fh)
            self.users = data.get("users", {})
            self.leaderboard = data.get("leaderboard", {})
            top = max((row.get("revision", 0) for row in self.leaderboard.values()), default=0)
            self._revision = itertools.count(top + 1)
            logger.info(
                "Loaded %d users from %s", len(self.users), self.path,
            )

    def _changed(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump({"users": self.users, "leaderboard": self.leaderboard}, fh, indent=2)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceUnavailable("write", exc) from exc
