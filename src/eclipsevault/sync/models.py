"""
Sync data models -- configuration, state, and the cloud envelope.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from ..merge import SearchEnginePolicy, SpaceNamePolicy
from ..models import BackupPackage, ImportStrategy, WireModel

SCHEMA_VERSION = 1
DEFAULT_PASSWORD_ENV = "ECLIPSEVAULT_WEBDAV_PASSWORD"


class TransportType(str, Enum):
    """Supported remote stores."""

    WEBDAV = "webdav"
    LOCAL = "local"


class SyncSection(str, Enum):
    """Coarse partitions used for change detection."""

    SPACE = "space"
    ZEN_SHELF = "zenShelf"
    CONFIG = "config"


class SectionHashes(WireModel):
    """Base64url SHA-256 digest of each section's canonical projection."""

    space: str
    zen_shelf: str
    config: str

    def get(self, section: SyncSection) -> str:
        return {
            SyncSection.SPACE: self.space,
            SyncSection.ZEN_SHELF: self.zen_shelf,
            SyncSection.CONFIG: self.config,
        }[section]


class CloudSyncEnvelope(WireModel):
    """A package plus its section hashes, as stored remotely."""

    schema_version: int = SCHEMA_VERSION
    generated_at: int
    backup: BackupPackage
    section_hashes: SectionHashes

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class CloudSyncConfig(BaseModel):
    """Sync configuration, persisted as sync/config.yaml."""

    transport: TransportType = TransportType.LOCAL
    enabled: bool = True

    # WebDAV
    endpoint: Optional[str] = None
    username: Optional[str] = None
    password_env_var: str = DEFAULT_PASSWORD_ENV
    timeout_seconds: float = 30.0

    # Local filesystem
    local_path: Optional[Path] = None

    encrypt: bool = False
    strategy: ImportStrategy = ImportStrategy.MERGE
    scope: list[SyncSection] = Field(
        default_factory=lambda: [SyncSection.SPACE, SyncSection.ZEN_SHELF, SyncSection.CONFIG]
    )
    space_policy: SpaceNamePolicy = SpaceNamePolicy.KEEP_BOTH
    engine_policy: SearchEnginePolicy = SearchEnginePolicy.KEEP_LOCAL


class CloudSyncState(BaseModel):
    """Current sync state persisted to sync/state.json."""

    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None
    push_count: int = 0
    pull_count: int = 0
    last_pushed_hashes: Optional[SectionHashes] = None
    last_pulled_hashes: Optional[SectionHashes] = None
    last_changed_sections: list[SyncSection] = Field(default_factory=list)
    last_error: Optional[str] = None
