"""
Content-addressed cache of finished solves.

Each completed, non-empty solve is stored on disk under the fingerprint of
its configuration, so an identical request is answered without searching.
One JSON file per fingerprint; writes go through a temp file and an atomic
replace, so a concurrent writer of the same fingerprint simply wins.

VERSIONING: a marker file records CACHE_SCHEMA_VERSION. When the marker is
missing or differs, every stored entry is considered stale and deleted.

Every failure is raised as CacheFault. Callers treat it as a miss.
"""

import hashlib
import json
import time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import SolverConfig
from errors import CacheFault
from protocol import result_from_payload, result_to_payload
from solver import SolverResult

# Bump when the stored result layout changes.
CACHE_SCHEMA_VERSION = 1

DEFAULT_MAX_AGE_DAYS = 7


def _canonical_decimal(value: str) -> str:
    return format(Decimal(value).normalize(), "f")


def _canonicalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _canonicalize(v) for k, v in value.items()}
    if isinstance(value, str):
        try:
            return _canonical_decimal(value)
        except InvalidOperation:
            return value
    return value


def config_fingerprint(config: SolverConfig, shards: int = 1) -> str:
    """
    SHA-256 over every field that can change the result set.

    Decimals are normalised first, so "100", "100.0" and "1E+2" give the
    same fingerprint. The shard count is included because each shard stops
    early on its own perfect-match count.
    """
    raw = _canonicalize(config.to_payload())
    raw["shards"] = int(shards)
    encoded = json.dumps(raw, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class ResultCache:
    """Versioned fingerprint -> result list store."""

    def __init__(self, cache_dir: Path, schema_version: int = CACHE_SCHEMA_VERSION):
        self.cache_dir = Path(cache_dir)
        self.schema_version = schema_version
        self.version_file = self.cache_dir / "schema_version.json"
        self._ready = False

    def _open(self):
        if self._ready:
            return
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            stored = None
            if self.version_file.exists():
                try:
                    stored = json.loads(self.version_file.read_text()).get("schema_version")
                except (json.JSONDecodeError, AttributeError):
                    stored = None
            if stored != self.schema_version:
                self._wipe_entries()
                self._write_json(self.version_file, {"schema_version": self.schema_version})
        except OSError as exc:
            raise CacheFault(f"cannot open cache at {self.cache_dir}: {exc}") from exc
        self._ready = True

    def _entries(self) -> List[Path]:
        return [p for p in self.cache_dir.glob("*.json") if p != self.version_file]

    def _wipe_entries(self) -> int:
        removed = 0
        for path in self._entries():
            path.unlink()
            removed += 1
        return removed

    @staticmethod
    def _write_json(path: Path, data: Dict[str, Any]):
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(path)

    def _entry_path(self, fingerprint: str) -> Path:
        return self.cache_dir / f"{fingerprint}.json"

    def get(self, fingerprint: str) -> Optional[List[SolverResult]]:
        """Stored results for this fingerprint, or None."""
        self._open()
        path = self._entry_path(fingerprint)
        try:
            if not path.exists():
                return None
            entry = json.loads(path.read_text())
            if not isinstance(entry, dict):
                raise TypeError(f"expected an object, got {type(entry).__name__}")
            if entry.get("schema_version") != self.schema_version:
                return None
            return [result_from_payload(r) for r in entry["results"]]
        except (OSError, ValueError, KeyError, TypeError, AttributeError, InvalidOperation) as exc:
            raise CacheFault(f"unreadable cache entry {path.name}: {exc!r}") from exc

    def put(
        self,
        fingerprint: str,
        results: List[SolverResult],
        config: Optional[SolverConfig] = None,
    ) -> bool:
        """Store results under fingerprint. Returns True once written."""
        self._open()
        entry = {
            "fingerprint": fingerprint,
            "schema_version": self.schema_version,
            "created_at": time.time(),
            "created_at_iso": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "config": config.to_payload() if config is not None else None,
            "results": [result_to_payload(r) for r in results],
        }
        try:
            self._write_json(self._entry_path(fingerprint), entry)
        except OSError as exc:
            raise CacheFault(f"cannot write cache entry {fingerprint}: {exc}") from exc
        return True

    def clear(self) -> int:
        """Delete every entry. Returns the number removed."""
        self._open()
        try:
            return self._wipe_entries()
        except OSError as exc:
            raise CacheFault(f"cannot clear cache at {self.cache_dir}: {exc}") from exc

    def sweep_expired(self, max_age_days: float = DEFAULT_MAX_AGE_DAYS, now: Optional[float] = None) -> int:
        """Delete entries older than max_age_days. Returns the number removed."""
        self._open()
        now = time.time() if now is None else now
        max_age = max_age_days * 24 * 60 * 60
        removed = 0
        try:
            for path in self._entries():
                try:
                    created = float(json.loads(path.read_text()).get("created_at", 0))
                except (ValueError, AttributeError):
                    created = 0.0
                if now - created > max_age:
                    path.unlink()
                    removed += 1
        except OSError as exc:
            raise CacheFault(f"cannot sweep cache at {self.cache_dir}: {exc}") from exc
        return removed

    def __len__(self) -> int:
        self._open()
        return len(self._entries())
