"""Client options and the editable set of domains routed through the proxy."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

ADDED_DOMAIN_KEY = "added_domains"
REMOVED_DOMAIN_KEY = "remed_domains"
SEARCH_LIMIT = 10


@dataclass
class Options:
    """Settings the client runs with."""

    hostname: str = ""
    password: str = ""
    port: int = 0
    mtu: int = 0
    pool_size: int = 0
    speed_update_ms: int = 0
    log_level: str = ""
    dns_cache_time: int = 0
    trusted_dns: str = ""
    untrusted_dns: str = ""


class Store(Protocol):
    def load(self, key: str) -> str: ...

    def save(self, key: str, value: str) -> None: ...


class MemoryStore:
    """Key-value store kept in memory; missing keys load as an empty string."""

    def __init__(self, data: dict[str, str] | None = None):
        self._data = dict(data or {})

    def load(self, key: str) -> str:
        return self._data.get(key, "")

    def save(self, key: str, value: str) -> None:
        self._data[key] = value


class FileStore:
    """Key-value store persisted as one JSON object in a file."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def load(self, key: str) -> str:
        return self._read().get(key, "")

    def save(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


def parse_domain_list(text: str) -> set[str]:
    """Read one domain per line, ignoring blank lines."""
    return {line.strip() for line in text.splitlines() if line.strip()}


class DomainContext:
    """Blocked-domain set with user additions and removals kept in a store."""

    def __init__(
        self,
        store: Store,
        blocked_domains: Iterable[str] = (),
        options: Options | None = None,
    ):
        self.store = store
        self.blocked_domains: set[str] = set(blocked_domains)
        self.options = options if options is not None else Options()

    def _load_list(self, key: str) -> list[str]:
        raw = self.store.load(key)
        if not raw:
            return []
        data = json.loads(raw)
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise ValueError(f"stored value for {key!r} is not a list of strings")
        return data

    def _save_list(self, key: str, data: list[str]) -> None:
        self.store.save(key, json.dumps(data, separators=(",", ":"), ensure_ascii=False))

    def merge_domains(self) -> None:
        """Apply stored additions and removals, dropping entries that change nothing."""
        new_added = []
        for domain in self._load_list(ADDED_DOMAIN_KEY):
            if domain not in self.blocked_domains:
                self.blocked_domains.add(domain)
                new_added.append(domain)
        self._save_list(ADDED_DOMAIN_KEY, new_added)

        new_removed = []
        for domain in self._load_list(REMOVED_DOMAIN_KEY):
            if domain in self.blocked_domains:
                self.blocked_domains.discard(domain)
                new_removed.append(domain)
        self._save_list(REMOVED_DOMAIN_KEY, new_removed)

    def search_domain(self, domain: str) -> list[str]:
        """Return up to ten blocked domains containing ``domain``."""
        matches = sorted(key for key in self.blocked_domains if domain in key)
        return matches[:SEARCH_LIMIT]

    def add_domain(self, domain: str) -> None:
        if domain in self.blocked_domains:
            return
        self.blocked_domains.add(domain)
        added = self._load_list(ADDED_DOMAIN_KEY)
        removed = self._load_list(REMOVED_DOMAIN_KEY)
        if domain in removed:
            removed.remove(domain)
            self._save_list(REMOVED_DOMAIN_KEY, removed)
        else:
            added.append(domain)
            self._save_list(ADDED_DOMAIN_KEY, added)

    def remove_domain(self, domain: str) -> None:
        if domain not in self.blocked_domains:
            return
        self.blocked_domains.discard(domain)
        added = self._load_list(ADDED_DOMAIN_KEY)
        removed = self._load_list(REMOVED_DOMAIN_KEY)
        if domain in added:
            added.remove(domain)
            self._save_list(ADDED_DOMAIN_KEY, added)
        else:
            removed.append(domain)
            self._save_list(REMOVED_DOMAIN_KEY, removed)