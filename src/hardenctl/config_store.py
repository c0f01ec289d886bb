"""Versioned, atomically replaced desired-state configuration.

The live document (``/etc/hardenctl/desired.yml`` by default) is never edited
in place. Every accepted document is first archived as ``history/v<seq>.yml``
and then swapped in with ``os.replace``. ``history/index.json`` records the
versions and which one is current; ``history/LKG`` holds the sequence number of
the last-known-good version, i.e. the newest version that passed post-apply
verification.

On read the store reconciles the live file with its history:

* a live file that cannot be parsed or fails validation is replaced by the
  last-known-good version (or the current one when nothing was verified yet);
* a valid live file whose content differs from the current version (a manual
  edit) is adopted as a new version;
* an untracked live file is adopted as version 1.
"""
from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .logging import get_logger
from .state.files import (
    StateFileError,
    atomic_write_text,
    dump_yaml,
    load_yaml,
    read_json,
    write_json,
)

_log = get_logger("config_store")
_VERSION_FILE = re.compile(r"^v(\d+)\.yml$")

Validator = Callable[[Mapping[str, object]], None]


class ConfigStoreError(RuntimeError):
    """Raised when the configuration store cannot satisfy a request."""


class ValidationError(ConfigStoreError):
    """Raised when a document is rejected before it is written."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def checksum_document(document: Mapping[str, object]) -> str:
    """Return the sha256 of *document* in canonical JSON form."""
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_mapping(document: object) -> None:
    """Minimal structural check applied to every document."""
    if not isinstance(document, Mapping):
        raise ValidationError("Configuration must be a mapping at the top level.")
    for key in document:
        if not isinstance(key, str):
            raise ValidationError(f"Configuration keys must be strings. Got {key!r}.")


@dataclass(frozen=True)
class ConfigVersion:
    """An immutable archived configuration document."""

    sequence: int
    created_at: str
    checksum: str
    message: str | None = None

    @property
    def filename(self) -> str:
        """Name of the archived document inside the history directory."""
        return f"v{self.sequence}.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sequence": self.sequence,
            "created_at": self.created_at,
            "checksum": self.checksum,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ConfigVersion:
        """Build from an index entry."""
        sequence = data.get("sequence")
        if not isinstance(sequence, int) or isinstance(sequence, bool):
            raise ConfigStoreError(f"History entry has invalid sequence: {data!r}.")
        message = data.get("message")
        return cls(
            sequence=sequence,
            created_at=str(data.get("created_at", "")),
            checksum=str(data.get("checksum", "")),
            message=str(message) if message is not None else None,
        )


class ConfigStore:
    """Read, write, version and roll back the desired-state document."""

    def __init__(
        self,
        live_path: Path,
        history_dir: Path,
        *,
        max_versions: int = 20,
        validator: Validator | None = None,
        protected_versions: Callable[[], Iterable[int]] | None = None,
    ) -> None:
        self.live_path = Path(live_path)
        self.history_dir = Path(history_dir)
        self.index_path = self.history_dir / "index.json"
        self.lkg_path = self.history_dir / "LKG"
        self.max_versions = max(2, int(max_versions))
        self._validator = validator
        self._protected_versions = protected_versions

    # ------------------------------------------------------------------
    # Index helpers
    # ------------------------------------------------------------------
    def _read_index(self) -> dict[str, object]:
        try:
            raw = read_json(self.index_path, default=None)
        except StateFileError as exc:
            _log.warning("History index unreadable (%s); rebuilding it from the archive.", exc)
            return self._rebuild_index()
        if raw is None:
            if any(self._archived_sequences()):
                return self._rebuild_index()
            return {"current": None, "versions": []}
        if not isinstance(raw, Mapping):
            return self._rebuild_index()
        return dict(raw)

    def _write_index(self, current: int | None, versions: Iterable[ConfigVersion]) -> None:
        ordered = sorted(versions, key=lambda item: item.sequence)
        write_json(
            self.index_path,
            {"current": current, "versions": [item.to_dict() for item in ordered]},
        )

    def _archived_sequences(self) -> list[int]:
        if not self.history_dir.is_dir():
            return []
        sequences: list[int] = []
        for path in self.history_dir.iterdir():
            match = _VERSION_FILE.match(path.name)
            if match:
                sequences.append(int(match.group(1)))
        return sorted(sequences)

    def _rebuild_index(self) -> dict[str, object]:
        """Reconstruct the index in memory; the next write persists it."""
        versions: list[ConfigVersion] = []
        for sequence in self._archived_sequences():
            try:
                document = self._load_archived(sequence)
            except ConfigStoreError:
                continue
            versions.append(
                ConfigVersion(
                    sequence=sequence,
                    created_at=_now_iso(),
                    checksum=checksum_document(document),
                    message="recovered from archive",
                )
            )
        current = versions[-1].sequence if versions else None
        return {"current": current, "versions": [item.to_dict() for item in versions]}

    def _versions(self, index: Mapping[str, object] | None = None) -> list[ConfigVersion]:
        data = index if index is not None else self._read_index()
        entries = data.get("versions", [])
        versions: list[ConfigVersion] = []
        if isinstance(entries, list):
            for entry in entries:
                if isinstance(entry, Mapping):
                    versions.append(ConfigVersion.from_dict(entry))
        return sorted(versions, key=lambda item: item.sequence)

    def _find(self, sequence: int, versions: Iterable[ConfigVersion]) -> ConfigVersion | None:
        for version in versions:
            if version.sequence == sequence:
                return version
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def history(self) -> list[ConfigVersion]:
        """Return archived versions, oldest first."""
        return self._versions()

    def current_version(self) -> ConfigVersion | None:
        """Return the current version, or None when the store is empty."""
        index = self._read_index()
        current = index.get("current")
        if not isinstance(current, int):
            return None
        return self._find(current, self._versions(index))

    def last_known_good(self) -> ConfigVersion | None:
        """Return the last-known-good version, or None when none was verified."""
        try:
            text = self.lkg_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigStoreError(f"Unable to read LKG pointer {self.lkg_path}: {exc}") from exc
        if not text.isdigit():
            _log.warning("Ignoring malformed LKG pointer %r in %s.", text, self.lkg_path)
            return None
        return self._find(int(text), self._versions())

    def load_version(self, sequence: int) -> dict[str, object]:
        """Return the archived document for *sequence*."""
        if self._find(sequence, self._versions()) is None:
            raise ConfigStoreError(f"Configuration version {sequence} is not in history.")
        return self._load_archived(sequence)

    def _load_archived(self, sequence: int) -> dict[str, object]:
        path = self.history_dir / f"v{sequence}.yml"
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigStoreError(f"Unable to read archived version {path}: {exc}") from exc
        try:
            document = load_yaml(text, source=str(path)) or {}
        except StateFileError as exc:
            raise ConfigStoreError(str(exc)) from exc
        if not isinstance(document, Mapping):
            raise ConfigStoreError(f"Archived version {path} is not a mapping.")
        return dict(document)

    # ------------------------------------------------------------------
    # Read with reconciliation
    # ------------------------------------------------------------------
    def read(self) -> dict[str, object]:
        """Return the live document after reconciling it with history."""
        document = self._parse_live()
        if document is None:
            return self._recover_live()

        current = self.current_version()
        checksum = checksum_document(document)
        if current is None and not self.live_path.exists():
            return document
        if current is None:
            _log.info("Adopting existing configuration %s as version 1.", self.live_path)
            self._archive(document, message="adopted existing configuration")
        elif current.checksum != checksum:
            _log.warning(
                "Configuration %s changed outside hardenctl; adopting as a new version.",
                self.live_path,
            )
            self._archive(document, message="adopted manual edit")
        return document

    def peek(self) -> dict[str, object]:
        """Return the document :meth:`read` would, without changing anything on disk.

        Manual edits are returned as found and not archived; an unusable live
        file is answered from history without being restored.
        """
        document = self._parse_live()
        if document is not None:
            return document
        target = self.last_known_good() or self.current_version()
        if target is None:
            raise ConfigStoreError(
                f"Configuration {self.live_path} is unusable and no archived version exists."
            )
        return self._load_archived(target.sequence)

    def _parse_live(self) -> dict[str, object] | None:
        """Return the valid live document, {} when absent, None when corrupt."""
        try:
            text = self.live_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            if self.current_version() is not None:
                _log.warning("Configuration %s is missing.", self.live_path)
                return None
            return {}
        except (OSError, UnicodeDecodeError) as exc:
            _log.warning("Configuration %s is unreadable: %s", self.live_path, exc)
            return None
        try:
            document = load_yaml(text, source=str(self.live_path))
            if document is None:
                document = {}
            self._validate(document)
        except (StateFileError, ValidationError) as exc:
            _log.warning("Configuration %s is invalid: %s", self.live_path, exc)
            return None
        assert isinstance(document, Mapping)
        return dict(document)

    def _recover_live(self) -> dict[str, object]:
        target = self.last_known_good() or self.current_version()
        if target is None:
            raise ConfigStoreError(
                f"Configuration {self.live_path} is unusable and no archived version exists."
            )
        _log.warning("Restoring configuration from version %s.", target.sequence)
        document = self._load_archived(target.sequence)
        self._swap_live(document)
        index = self._read_index()
        self._write_index(target.sequence, self._versions(index))
        return document

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _validate(self, document: object) -> None:
        validate_mapping(document)
        if self._validator is not None:
            assert isinstance(document, Mapping)
            self._validator(document)

    def write(self, document: Mapping[str, object], message: str | None = None) -> ConfigVersion:
        """Validate, archive and atomically swap in *document*.

        Writing a document identical to the current version is a no-op that
        returns the current version.
        """
        self._validate(document)
        payload = dict(document)
        current = self.current_version()
        if current is not None and current.checksum == checksum_document(payload):
            live = self._parse_live()
            if live is not None and checksum_document(live) == current.checksum:
                return current
            self._swap_live(payload)
            return current
        version = self._archive(payload, message=message)
        self._swap_live(payload)
        return version

    def _archive(self, document: Mapping[str, object], *, message: str | None) -> ConfigVersion:
        index = self._read_index()
        versions = self._versions(index)
        sequence = max([item.sequence for item in versions] + self._archived_sequences() + [0]) + 1
        version = ConfigVersion(
            sequence=sequence,
            created_at=_now_iso(),
            checksum=checksum_document(document),
            message=message,
        )
        try:
            atomic_write_text(self.history_dir / version.filename, dump_yaml(document))
        except StateFileError as exc:
            raise ConfigStoreError(str(exc)) from exc
        versions.append(version)
        self._write_index(sequence, versions)
        self._prune()
        return version

    def _swap_live(self, document: Mapping[str, object]) -> None:
        try:
            atomic_write_text(self.live_path, dump_yaml(document), mode=0o640)
        except StateFileError as exc:
            raise ConfigStoreError(str(exc)) from exc

    def mark_last_known_good(self, version: ConfigVersion | int) -> ConfigVersion:
        """Point LKG at *version*; it must exist and not be newer than current."""
        sequence = version.sequence if isinstance(version, ConfigVersion) else int(version)
        current = self.current_version()
        target = self._find(sequence, self._versions())
        if target is None:
            raise ConfigStoreError(f"Cannot mark unknown version {sequence} as last-known-good.")
        if current is None or sequence > current.sequence:
            raise ConfigStoreError(
                f"Refusing to mark version {sequence} last-known-good ahead of current."
            )
        try:
            atomic_write_text(self.lkg_path, f"{sequence}\n")
        except StateFileError as exc:
            raise ConfigStoreError(str(exc)) from exc
        return target

    def restore(self, sequence: int, message: str | None = None) -> ConfigVersion:
        """Make the content of *sequence* current again.

        The restored content becomes a new version so history stays
        append-only; restoring content equal to the current version is a no-op.
        """
        document = self.load_version(sequence)
        return self.write(document, message=message or f"restored from v{sequence}")

    def rollback_to_last_known_good(self) -> ConfigVersion:
        """Restore the last-known-good version."""
        lkg = self.last_known_good()
        if lkg is None:
            raise ConfigStoreError("No last-known-good configuration has been recorded.")
        return self.restore(lkg.sequence, message=f"rollback to last-known-good v{lkg.sequence}")

    def _prune(self) -> None:
        index = self._read_index()
        versions = self._versions(index)
        if len(versions) <= self.max_versions:
            return
        keep: set[int] = set()
        current = index.get("current")
        if isinstance(current, int):
            keep.add(current)
        lkg = self.last_known_good()
        if lkg is not None:
            keep.add(lkg.sequence)
        if self._protected_versions is not None:
            keep.update(int(item) for item in self._protected_versions())

        excess = len(versions) - self.max_versions
        survivors: list[ConfigVersion] = []
        for version in versions:
            if excess > 0 and version.sequence not in keep:
                (self.history_dir / version.filename).unlink(missing_ok=True)
                excess -= 1
                continue
            survivors.append(version)
        self._write_index(current if isinstance(current, int) else None, survivors)


__all__ = [
    "ConfigStore",
    "ConfigStoreError",
    "ConfigVersion",
    "ValidationError",
    "checksum_document",
    "validate_mapping",
]
