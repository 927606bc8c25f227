"""
Shared fixtures: throw-away index repositories and fake collaborators.
"""

import json
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from git import Actor, Repo

from shared.database import SubscriberLookup
from shared.transport import TransportError

BORS = Actor("bors", "bors@rust-lang.org")
HUMAN = Actor("Jane Doe", "jane@example.com")


def index_line(name: str, vers: str, yanked: bool = False, **extra) -> str:
    record = {
        "name": name,
        "vers": vers,
        "deps": [],
        "cksum": "0" * 64,
        "features": {},
        "yanked": yanked,
    }
    record.update(extra)
    return json.dumps(record, separators=(",", ":"))


def index_path(name: str) -> str:
    """Relative path of a package file, crates.io-index layout."""
    if len(name) <= 2:
        return f"{len(name)}/{name}"
    if len(name) == 3:
        return f"3/{name[0]}/{name}"
    return f"{name[:2]}/{name[2:4]}/{name}"


class IndexBuilder:
    """Writes index commits the way the registry automation does."""

    def __init__(self, path: Path):
        self.path = path
        self.epoch = int(time.time()) - 3600
        self.commits = 0
        self.repo = Repo.init(path)
        self.repo.git.symbolic_ref("HEAD", "refs/heads/master")
        with self.repo.config_writer() as config:
            config.set_value("user", "name", BORS.name)
            config.set_value("user", "email", BORS.email)

    @property
    def head(self):
        return self.repo.head.commit

    def _file(self, name: str) -> Path:
        return self.path / index_path(name)

    def read_lines(self, name: str) -> List[str]:
        file = self._file(name)
        if not file.exists():
            return []
        return file.read_text(encoding="utf-8").split("\n")[:-1]

    def write_lines(self, name: str, lines: List[str]):
        file = self._file(name)
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        self.repo.index.add([index_path(name)])

    def commit(self, message: str, author: Actor = BORS):
        # Strictly increasing dates keep the log order stable
        self.commits += 1
        date = f"{self.epoch + self.commits} +0000"
        return self.repo.index.commit(
            message, author=author, committer=author, author_date=date, commit_date=date
        )

    def publish(self, name: str, vers: str, author: Actor = BORS, **extra):
        lines = self.read_lines(name)
        lines.append(index_line(name, vers, **extra))
        self.write_lines(name, lines)
        return self.commit(f"Updating crate `{name}#{vers}`", author)

    def set_yanked(self, name: str, vers: str, yanked: bool, author: Actor = BORS):
        lines = []
        for line in self.read_lines(name):
            record = json.loads(line)
            if record["vers"] == vers:
                record["yanked"] = yanked
                line = json.dumps(record, separators=(",", ":"))
            lines.append(line)
        self.write_lines(name, lines)
        return self.commit(f"{'Yanking' if yanked else 'Unyanking'} crate `{name}#{vers}`", author)

    def write_raw(self, files: Dict[str, List[str]], message: str = "raw", author: Actor = BORS):
        for name, lines in files.items():
            self.write_lines(name, lines)
        return self.commit(message, author)

    def delete(self, name: str):
        self.repo.index.remove([index_path(name)], working_tree=True)
        return self.commit(f"Delete crate `{name}`")

    def rename(self, name: str, new_name: str):
        target = self._file(new_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        self.repo.git.mv(index_path(name), index_path(new_name))
        return self.commit(f"Rename crate `{name}` to `{new_name}`")


@pytest.fixture
def index(tmp_path) -> IndexBuilder:
    """Upstream index with one published version: foo 1.0.0."""
    builder = IndexBuilder(tmp_path / "upstream")
    builder.publish("foo", "1.0.0")
    return builder


@pytest.fixture
def clone(index, tmp_path) -> Repo:
    """Local checkout of the upstream index, cursor at its current head."""
    return Repo.clone_from(str(index.path), str(tmp_path / "local"))


class FakeTransport:
    """Records sends; fails the first ``failures[chat_id]`` sends to a chat."""

    def __init__(self, failures: Optional[Dict[int, int]] = None):
        self.failures = dict(failures or {})
        self.sent = []
        self.attempts = []
        self.closed = False

    async def send_message(self, chat_id, text, disable_notification=False, disable_web_page_preview=True):
        self.attempts.append(chat_id)
        if self.failures.get(chat_id, 0) > 0:
            self.failures[chat_id] -= 1
            raise TransportError("Too Many Requests: retry later", status_code=429)
        self.sent.append(
            {
                "chat_id": chat_id,
                "text": text,
                "quiet": disable_notification,
                "preview_disabled": disable_web_page_preview,
                "at": time.monotonic(),
            }
        )
        return {"message_id": len(self.sent)}

    async def close(self):
        self.closed = True


class FakeSubscribers(SubscriberLookup):
    def __init__(self, subscribers: Optional[Dict[str, List[int]]] = None, error: Exception = None):
        self.subscribers = subscribers or {}
        self.error = error
        self.lookups = []

    async def list_subscribers(self, package: str) -> List[int]:
        self.lookups.append(package)
        if self.error is not None:
            raise self.error
        return list(self.subscribers.get(package, []))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
