"""
Lifecycle event extraction from consecutive index commits.

Every commit made by the index automation touches exactly one line of one
file: a new version appends a line, (un)yanking rewrites the line of that
version with the ``yanked`` flag flipped. A zero-context diff between the two
trees therefore shows at most one removed and exactly one added line, and the
pair of yanked flags tells which event happened.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from git import Commit
from git.diff import Diff

from shared.events import LifecycleEvent, LifecycleKind
from shared.models import IndexRecord
from services.index_notifier.errors import (
    AmbiguousTransition,
    MalformedRecord,
    ShapeViolation,
    UnsupportedDelta,
)

logger = logging.getLogger(__name__)

ADDED = "A"
MODIFIED = "M"
DELETED = "D"
RENAMED = "R"
COPIED = "C"

SUPPORTED_CHANGES = (ADDED, MODIFIED)


@dataclass
class FileDelta:
    """Changed lines of one file between two commits."""

    path: str
    change_type: str
    removed: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)


def parse_patch_lines(patch: str) -> Tuple[List[str], List[str]]:
    """Split a zero-context patch body into removed and added lines."""
    removed = []
    added = []
    # Only "\n" ends a patch line; JSON strings may hold other line separators raw
    for line in patch.split("\n"):
        if line.startswith("-"):
            removed.append(line[1:])
        elif line.startswith("+"):
            added.append(line[1:])
        # "@@" hunk headers and "\ No newline at end of file" carry no content
    return removed, added


def parse_record(line: str, prev: str, next: str) -> IndexRecord:
    try:
        return IndexRecord.from_line(line)
    except ValueError as e:
        raise MalformedRecord(f"Couldn't deserialize index record: {e}", prev, next) from e


def classify(
    removed: Sequence[str], added: Sequence[str], prev: str, next: str
) -> Tuple[IndexRecord, LifecycleKind]:
    """
    Turn the removed/added lines of a commit pair into a lifecycle change.

    Raises:
        ShapeViolation: more than one removal, or not exactly one addition
        MalformedRecord: a line is not a valid index record
        AmbiguousTransition: the yanked flags match no known transition
    """
    if len(removed) > 1:
        raise ShapeViolation(
            f"Expected number of deletions <= 1 per commit, got {len(removed)}", prev, next
        )
    if len(added) != 1:
        raise ShapeViolation(
            f"Expected number of additions = 1 per commit, got {len(added)}", prev, next
        )

    old = parse_record(removed[0], prev, next) if removed else None
    new = parse_record(added[0], prev, next)

    # (was yanked?, is yanked?)
    transition = (old.yanked if old is not None else None, new.yanked)
    if transition == (None, False):
        return new, LifecycleKind.NEW_VERSION
    if transition == (False, True):
        return new, LifecycleKind.YANKED
    if transition == (True, False):
        return new, LifecycleKind.UNYANKED

    logger.warning(f"Unexpected transition {transition}: {old!r} -> {new!r}")
    raise AmbiguousTransition(f"Unexpected yanked transition {transition}", prev, next)


def _change_type(diff: Diff) -> str:
    if diff.new_file:
        return ADDED
    if diff.deleted_file:
        return DELETED
    if diff.renamed_file:
        return RENAMED
    if diff.copied_file:
        return COPIED
    return diff.change_type or MODIFIED


class DiffExtractor:
    """Derives at most one LifecycleEvent from a pair of consecutive commits."""

    def __init__(self, bot_author: str = "bors"):
        self.bot_author = bot_author

    def is_canonical(self, commit: Commit) -> bool:
        """Whether the commit was made by the index automation."""
        return commit.author.name == self.bot_author

    def file_deltas(self, prev: Commit, next: Commit) -> List[FileDelta]:
        """Zero-context, minimal diff of the two trees, one entry per changed file."""
        deltas = []
        diff_index = prev.diff(next, create_patch=True, unified="0", minimal=True)
        for diff in diff_index:
            raw = diff.diff or b""
            try:
                patch = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            except UnicodeDecodeError as e:
                raise MalformedRecord(
                    f"Non UTF-8 diff in {diff.b_path or diff.a_path}", prev.hexsha, next.hexsha
                ) from e
            removed, added = parse_patch_lines(patch)
            deltas.append(
                FileDelta(
                    path=diff.b_path or diff.a_path,
                    change_type=_change_type(diff),
                    removed=removed,
                    added=added,
                )
            )
        return deltas

    def extract(self, prev: Commit, next: Commit) -> Optional[LifecycleEvent]:
        """
        Derive the lifecycle event of the ``prev`` -> ``next`` commit pair.

        Returns None when the pair is deliberately skipped: ``next`` was not
        made by the automation, or it only touched files in unsupported ways.

        Raises:
            ExtractError: the diff does not describe a single index change
        """
        # Commits from humans tend to be formatted differently compared to
        # machine-generated ones, which makes them unanalyzable.
        if not self.is_canonical(next):
            summary = next.message.strip().splitlines()[0] if next.message.strip() else ""
            logger.warning(
                f"Skip commit#{next.hexsha} from non-{self.bot_author} user "
                f"@{next.author.name}: {summary}"
            )
            return None

        return self.extract_from_deltas(self.file_deltas(prev, next), prev.hexsha, next.hexsha)

    def extract_from_deltas(
        self, deltas: Sequence[FileDelta], prev: str, next: str
    ) -> Optional[LifecycleEvent]:
        """Classify already collected file deltas of the ``prev`` -> ``next`` pair."""
        removed: List[str] = []
        added: List[str] = []
        skipped = 0

        for delta in deltas:
            try:
                self._check_delta(delta, prev, next)
            except UnsupportedDelta as e:
                logger.warning(f"Unexpected delta: {e}")
                skipped += 1
                continue
            removed.extend(delta.removed)
            added.extend(delta.added)

        if skipped and skipped == len(deltas):
            return None

        record, kind = classify(removed, added, prev, next)
        return LifecycleEvent(record=record, kind=kind, prev_commit=prev, next_commit=next)

    @staticmethod
    def _check_delta(delta: FileDelta, prev: str, next: str):
        if delta.change_type not in SUPPORTED_CHANGES:
            raise UnsupportedDelta(f"{delta.change_type} {delta.path}", prev, next)
