from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from bonsai.core.config import IntegrationConfig
from bonsai.core.errors import PathEscapeError
from bonsai.core.models.enums import ConflictKind
from bonsai.core.services.isolation import ConflictPolicy, FileOverlapRecord, resolve_within

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def policy() -> ConflictPolicy:
    return ConflictPolicy.from_config(
        IntegrationConfig(
            human_required_patterns=["*.lock", "**/migrations/**", "schema.sql"],
            max_machine_resolvable_files=2,
        )
    )


class TestConflictPolicy:
    def test_small_source_conflict_is_machine_resolvable(self, policy: ConflictPolicy) -> None:
        assert policy.classify(["src/app.py"]) is ConflictKind.MACHINE_RESOLVABLE

    @pytest.mark.parametrize(
        "path", ["poetry.lock", "db/migrations/0003_add.py", "sql/schema.sql"]
    )
    def test_sensitive_paths_need_a_human(self, policy: ConflictPolicy, path: str) -> None:
        assert policy.classify([path]) is ConflictKind.HUMAN_REQUIRED

    def test_too_many_files_need_a_human(self, policy: ConflictPolicy) -> None:
        files = ["a.py", "b.py", "c.py"]
        assert policy.classify(files) is ConflictKind.HUMAN_REQUIRED

    def test_empty_conflict_list(self, policy: ConflictPolicy) -> None:
        assert policy.classify([]) is ConflictKind.MACHINE_RESOLVABLE


class TestOverlapRecord:
    def test_overlap_is_the_intersection(self) -> None:
        record = FileOverlapRecord(
            item_id="item",
            base="abc",
            item_paths=frozenset({"src/a.py", "src/b.py"}),
            trunk_paths=frozenset({"src/b.py", "docs/x.md"}),
        )
        assert record.overlap == {"src/b.py"}
        assert not record.is_empty

    def test_disjoint_changes(self) -> None:
        record = FileOverlapRecord("item", "abc", frozenset({"a.py"}), frozenset({"b.py"}))
        assert record.overlap == frozenset()
        assert record.is_empty


class TestResolveWithin:
    def test_relative_path_stays_inside(self, tmp_path: Path) -> None:
        assert resolve_within(tmp_path, "sub/file.txt") == (tmp_path / "sub/file.txt").resolve()

    @pytest.mark.parametrize("candidate", ["../outside", "sub/../../outside", "/etc/passwd"])
    def test_escape_is_refused(self, tmp_path: Path, candidate: str) -> None:
        with pytest.raises(PathEscapeError):
            resolve_within(tmp_path, candidate)

    def test_symlink_escape_is_refused(self, tmp_path: Path) -> None:
        root = tmp_path / "root"
        root.mkdir()
        (root / "link").symlink_to(tmp_path)
        with pytest.raises(PathEscapeError):
            resolve_within(root, "link/secret")
