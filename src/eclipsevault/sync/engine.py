"""
Cloud Sync Engine -- envelope building, encryption, and transport.

Reads the sync config, picks the transport, and coordinates push/pull
against the local store.

    eclipsevault sync push  ->  snapshot -> envelope -> [encrypt] -> upload
    eclipsevault sync pull  ->  download -> [decrypt] -> diff -> scoped import
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .. import EclipseVaultError, crypto
from ..backup import BackupService, ImportResult
from ..merge import IdGenerator, MergePolicy
from ..models import ImportScope, ImportStrategy
from ..persistence import PersistenceAdapter
from .diff import (
    build_envelope,
    diff_sections,
    parse_envelope,
    restrict_import_scope,
    scope_from_sections,
)
from .models import CloudSyncConfig, CloudSyncEnvelope, CloudSyncState, SyncSection
from .transport import TransportClient, create_transport

logger = logging.getLogger("eclipsevault.sync.engine")


class SyncNotConfigured(EclipseVaultError):
    """Raised when push/pull is attempted with sync disabled."""


@dataclass
class SyncDiff:
    """Local vs remote section comparison."""

    changed_sections: list[SyncSection]
    local: CloudSyncEnvelope
    remote: CloudSyncEnvelope


@dataclass
class PullResult:
    """What a pull found and did."""

    changed_sections: list[SyncSection] = field(default_factory=list)
    effective_scope: ImportScope = field(default_factory=ImportScope.none)
    import_result: Optional[ImportResult] = None
    dry_run: bool = False

    @property
    def applied(self) -> bool:
        return self.import_result is not None


class CloudSyncEngine:
    """Orchestrates push/pull of the local store through one transport.

    Args:
        store: Local persistence adapter.
        home: Vault home (``sync/`` lives under it).
        transport: Override the configured transport (tests).
        id_generator: Passed through to merges.
    """

    def __init__(
        self,
        store: PersistenceAdapter,
        home: Path,
        transport: Optional[TransportClient] = None,
        id_generator: Optional[IdGenerator] = None,
    ):
        self.home = Path(home).expanduser()
        self.sync_dir = self.home / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)

        self.backups = BackupService(store, id_generator=id_generator)
        self.config = self._load_config()
        self.state = self._load_state()
        self._transport = transport

    @property
    def config_path(self) -> Path:
        return self.sync_dir / "config.yaml"

    @property
    def state_path(self) -> Path:
        return self.sync_dir / "state.json"

    def _load_config(self) -> CloudSyncConfig:
        """Load sync configuration from disk."""
        if self.config_path.exists():
            try:
                data = yaml.safe_load(self.config_path.read_text()) or {}
                return CloudSyncConfig(**data)
            except (yaml.YAMLError, ValueError, TypeError) as exc:
                logger.warning("Failed to load sync config: %s", exc)
        return CloudSyncConfig()

    def _load_state(self) -> CloudSyncState:
        """Load sync state from disk."""
        if self.state_path.exists():
            try:
                data = json.loads(self.state_path.read_text())
                return CloudSyncState(**data)
            except (json.JSONDecodeError, ValueError, TypeError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return CloudSyncState()

    def _save_state(self) -> None:
        """Persist sync state to disk."""
        self.state_path.write_text(self.state.model_dump_json(indent=2))

    def save_config(self) -> None:
        """Persist sync configuration to disk."""
        data = self.config.model_dump(mode="json", exclude_none=True)
        self.config_path.write_text(yaml.dump(data, default_flow_style=False))

    def configure(self, config: CloudSyncConfig) -> None:
        """Replace and persist the sync configuration."""
        self.config = config
        self._transport = None
        self.save_config()
        logger.info("Configured sync transport: %s", config.transport.value)

    @property
    def transport(self) -> TransportClient:
        if not self.config.enabled:
            raise SyncNotConfigured("Cloud sync is disabled; run `eclipsevault sync init`")
        if self._transport is None:
            self._transport = create_transport(self.config, self.home)
        return self._transport

    def _record_error(self, exc: Exception) -> None:
        self.state.last_error = str(exc)
        self._save_state()

    # -- operations -------------------------------------------------------

    def local_envelope(self) -> CloudSyncEnvelope:
        return build_envelope(self.backups.create_package())

    def push(self, password: Optional[str] = None) -> CloudSyncEnvelope:
        """Upload the local state as an envelope.

        Args:
            password: Required when ``encrypt`` is on.

        Returns:
            The envelope that was uploaded.

        Raises:
            PasswordRequired: Encryption on and no password.
            TransportError: Upload failed.
        """
        envelope = self.local_envelope()
        body = envelope.to_json()
        if self.config.encrypt:
            body = crypto.encrypt_json(body, password or "")

        try:
            self.transport.upload(body.encode("utf-8"))
        except EclipseVaultError as exc:
            self._record_error(exc)
            raise

        self.state.last_push = datetime.now(timezone.utc)
        self.state.push_count += 1
        self.state.last_pushed_hashes = envelope.section_hashes
        self.state.last_error = None
        self._save_state()
        logger.info("Pushed sync envelope via %s", self.transport.name)
        return envelope

    def fetch_remote(self, password: Optional[str] = None) -> CloudSyncEnvelope:
        """Download and parse the remote envelope.

        Raises:
            RemoteNotFound: Nothing uploaded yet.
            PasswordRequired: Remote is encrypted and no password given.
            DecryptionFailed: Wrong password or corrupted payload.
        """
        raw = self.transport.download()
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return parse_envelope(raw)

        if crypto.looks_encrypted(data):
            if not password:
                raise crypto.PasswordRequired("Remote backup is encrypted; a password is required")
            return parse_envelope(crypto.decrypt(data, password))
        return parse_envelope(data)

    def diff(self, password: Optional[str] = None) -> SyncDiff:
        """Compare remote section hashes against the local state."""
        remote = self.fetch_remote(password)
        local = self.local_envelope()
        return SyncDiff(
            changed_sections=diff_sections(local, remote),
            local=local,
            remote=remote,
        )

    def pull(
        self,
        password: Optional[str] = None,
        strategy: Optional[ImportStrategy] = None,
        scope: Optional[ImportScope] = None,
        policy: Optional[MergePolicy] = None,
        dry_run: bool = False,
        now: Optional[datetime] = None,
    ) -> PullResult:
        """Download the remote envelope and import the sections that changed.

        Args:
            password: For encrypted remotes.
            strategy: merge/overwrite; defaults to config.
            scope: Requested sections; defaults to config. Narrowed to the
                sections whose hashes differ.
            policy: Merge policy; defaults to config.
            dry_run: Report what changed without importing.
            now: Timestamp for the merge.

        Returns:
            PullResult.
        """
        try:
            result = self.diff(password)
        except EclipseVaultError as exc:
            self._record_error(exc)
            raise

        requested = scope or scope_from_sections(self.config.scope)
        effective = restrict_import_scope(requested, result.changed_sections)
        outcome = PullResult(
            changed_sections=result.changed_sections,
            effective_scope=effective,
            dry_run=dry_run,
        )

        if dry_run or not effective.any_enabled:
            logger.info(
                "Pull: nothing to import (changed: %s, dry run: %s)",
                ", ".join(s.value for s in result.changed_sections) or "none",
                dry_run,
            )
            return outcome

        try:
            outcome.import_result = self.backups.apply_import(
                result.remote.backup,
                strategy=strategy or self.config.strategy,
                scope=effective,
                policy=policy or MergePolicy(
                    space_name=self.config.space_policy,
                    search_engine=self.config.engine_policy,
                ),
                now=now,
            )
        except EclipseVaultError as exc:
            self._record_error(exc)
            raise

        self.state.last_pull = datetime.now(timezone.utc)
        self.state.pull_count += 1
        self.state.last_pulled_hashes = result.remote.section_hashes
        self.state.last_changed_sections = result.changed_sections
        self.state.last_error = None
        self._save_state()
        logger.info(
            "Pulled and imported sections: %s", ", ".join(effective.sections())
        )
        return outcome

    def status(self) -> dict:
        """Get current sync status.

        Returns:
            Dict with config and state.
        """
        return {
            "transport": self.config.transport.value,
            "enabled": self.config.enabled,
            "endpoint": self.config.endpoint,
            "local_path": str(self.config.local_path) if self.config.local_path else None,
            "encrypt": self.config.encrypt,
            "strategy": self.config.strategy.value,
            "scope": [section.value for section in self.config.scope],
            "state": self.state.model_dump(mode="json"),
        }
