"""Pydantic models for the results of sync and migration runs."""

from pydantic import BaseModel


class SyncResult(BaseModel):
    """Outcome of syncing a single entity."""

    entity_id: str
    success: bool
    error: str | None = None


class FanOutResult(BaseModel):
    """Outcome of re-syncing every record of a user after a profile change.

    Attributes:
        user_id:      The user whose profile changed.
        updated:      Records rewritten with the new snapshot.
        total:        Stale records found.
        failed_ids:   Record ids whose rewrite exhausted its retries.
        failed_scans: Scans (or workspace listings) that exhausted their retries;
                      records behind them were never looked at.
    """

    user_id: str
    updated: int = 0
    total: int = 0
    failed_ids: list[str] = []
    failed_scans: list[str] = []

    def is_complete(self) -> bool:
        return not self.failed_ids and not self.failed_scans

    def summary(self) -> str:
        return f"{self.updated} of {self.total} updated"


class ReindexResult(BaseModel):
    """Outcome of a full reindex run."""

    workspaces: int = 0
    channels: int = 0
    messages_synced: int = 0
    bios_synced: int = 0
    failed_ids: list[str] = []
    cancelled: bool = False

    def get_total_updated(self) -> int:
        return self.messages_synced + self.bios_synced


class UserMigrationTally(BaseModel):
    """Per-user outcome of the agent profile migration."""

    user_id: str
    status: str  # "migrated" | "skipped" | "failed"
    source: str | None = None  # "bio" | "persona"
    error: str | None = None


class AgentMigrationResult(BaseModel):
    """Outcome of the agent profile migration, with one tally entry per user."""

    total_users: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: list[str] = []
    users: list[UserMigrationTally] = []
    cancelled: bool = False

    def add(self, tally: UserMigrationTally) -> None:
        self.users.append(tally)
        if tally.status == "migrated":
            self.migrated += 1
        elif tally.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
            self.failed_ids.append(tally.user_id)
