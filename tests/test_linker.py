from __future__ import annotations

import os
import threading
from pathlib import Path

import allure
import pytest

from upkeep.errors import LinkError
from upkeep.executors.link import SymlinkLinker
from upkeep.tasks.models import LinkSpec, TaskStatus
from upkeep.tasks.resources import BackupDirectory

pytestmark = [
    allure.epic("Executors"),
    allure.feature("Symlink Linker"),
]

RUN_STAMP = "2026-01-02T03-04-05Z"


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _snapshot(root: Path) -> dict[str, tuple[str, str]]:
    state: dict[str, tuple[str, str]] = {}
    for current, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(current) / name
            key = str(path.relative_to(root))
            if path.is_symlink():
                state[key] = ("link", os.readlink(path))
            elif path.is_dir():
                state[key] = ("dir", "")
            else:
                state[key] = ("file", path.read_text(encoding="utf-8"))
    return state


@pytest.fixture()
def dirs(tmp_path: Path) -> tuple[Path, Path, Path]:
    source = tmp_path / "dotfiles"
    target = tmp_path / "home"
    backup = tmp_path / "backups"
    source.mkdir()
    target.mkdir()
    return source.resolve(), target.resolve(), backup.resolve()


def _linker(backup_root: Path) -> SymlinkLinker:
    return SymlinkLinker(BackupDirectory(backup_root, RUN_STAMP))


def test_links_every_file_and_creates_directories(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / ".zshrc", "zsh")
    _write(source / ".config" / "git" / "config", "git")

    report = _linker(backup).link(LinkSpec(source, target, backup))

    assert report.status == TaskStatus.SUCCESS
    assert (target / ".zshrc").is_symlink()
    assert os.readlink(target / ".zshrc") == str(source / ".zshrc")
    assert (target / ".config").is_dir()
    assert not (target / ".config").is_symlink()
    assert (target / ".config" / "git" / "config").read_text(encoding="utf-8") == "git"
    assert len(report.linked) == 2
    assert not backup.exists()


def test_conflicting_file_is_backed_up_and_replaced(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / "a" / "b.conf", "new contents")
    _write(target / "a" / "b.conf", "original contents")

    report = _linker(backup).link(LinkSpec(source, target, backup))

    linked = target / "a" / "b.conf"
    assert linked.is_symlink()
    assert linked.resolve() == source / "a" / "b.conf"
    saved = backup / RUN_STAMP / "a" / "b.conf"
    assert saved.is_file()
    assert not saved.is_symlink()
    assert saved.read_text(encoding="utf-8") == "original contents"
    assert report.backed_up == [(linked, saved)]
    assert report.status == TaskStatus.SUCCESS


def test_second_run_changes_nothing_and_is_skipped(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / ".vimrc", "set nu")
    _write(source / ".config" / "nvim" / "init.lua", "--")
    _write(target / ".vimrc", "old")
    spec = LinkSpec(source, target, backup)
    linker = _linker(backup)
    linker.link(spec)
    before = _snapshot(target.parent)

    report = linker.link(spec)

    assert report.status == TaskStatus.SKIPPED
    assert report.unchanged == 2
    assert _snapshot(target.parent) == before


def test_link_to_other_target_is_backed_up(dirs: tuple[Path, Path, Path], tmp_path: Path) -> None:
    source, target, backup = dirs
    _write(source / ".bashrc", "mine")
    elsewhere = _write(tmp_path / "elsewhere" / ".bashrc", "theirs")
    (target / ".bashrc").symlink_to(elsewhere)

    report = _linker(backup).link(LinkSpec(source, target, backup))

    assert (target / ".bashrc").resolve() == source / ".bashrc"
    saved = backup / RUN_STAMP / ".bashrc"
    assert saved.is_symlink()
    assert os.readlink(saved) == str(elsewhere)
    assert len(report.backed_up) == 1


def test_existing_directory_in_file_position_is_backed_up(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / "tool.conf", "file")
    _write(target / "tool.conf" / "inner.txt", "nested")

    _linker(backup).link(LinkSpec(source, target, backup))

    assert (target / "tool.conf").is_symlink()
    assert (backup / RUN_STAMP / "tool.conf" / "inner.txt").read_text(encoding="utf-8") == "nested"


def test_file_in_directory_position_is_backed_up(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / ".ssh" / "config", "Host *")
    _write(target / ".ssh", "not a directory")

    _linker(backup).link(LinkSpec(source, target, backup))

    assert (target / ".ssh").is_dir()
    assert (target / ".ssh" / "config").is_symlink()
    assert (backup / RUN_STAMP / ".ssh").read_text(encoding="utf-8") == "not a directory"


def test_directory_link_into_source_is_replaced_by_real_directory(
    dirs: tuple[Path, Path, Path],
) -> None:
    source, target, backup = dirs
    _write(source / ".config" / "app" / "settings", "x")
    (target / ".config").symlink_to(source / ".config")

    report = _linker(backup).link(LinkSpec(source, target, backup))

    assert (target / ".config").is_dir()
    assert not (target / ".config").is_symlink()
    assert (target / ".config" / "app" / "settings").is_symlink()
    assert target / ".config" in report.removed
    assert not backup.exists()


def test_stale_links_into_source_are_removed(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / "kept", "k")
    (target / "gone").symlink_to(source / "gone")
    (target / "unrelated").symlink_to(target.parent / "missing-elsewhere")

    report = _linker(backup).link(LinkSpec(source, target, backup))

    assert not os.path.lexists(target / "gone")
    assert (target / "unrelated").is_symlink()
    assert report.removed == [target / "gone"]


def test_top_level_git_directory_is_not_linked(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / ".git" / "HEAD", "ref: refs/heads/main")
    _write(source / ".gitconfig", "[user]")
    _write(source / "nested" / ".git", "gitdir: elsewhere")

    _linker(backup).link(LinkSpec(source, target, backup))

    assert not os.path.lexists(target / ".git")
    assert (target / ".gitconfig").is_symlink()
    assert (target / "nested" / ".git").is_symlink()


def test_missing_source_directory_is_a_link_error(dirs: tuple[Path, Path, Path]) -> None:
    _source, target, backup = dirs
    with pytest.raises(LinkError, match="source directory does not exist"):
        _linker(backup).link(LinkSpec(target.parent / "absent", target, backup))


def test_concurrent_links_share_one_backup_directory(tmp_path: Path) -> None:
    workers = 6
    backup_root = tmp_path / "backups"
    backup = BackupDirectory(backup_root, RUN_STAMP)
    specs = []
    for index in range(workers):
        source = tmp_path / f"src{index}"
        target = tmp_path / f"dst{index}"
        _write(source / "same.conf", f"new {index}")
        _write(target / "same.conf", f"old {index}")
        specs.append(LinkSpec(source, target, backup_root))

    barrier = threading.Barrier(workers)
    errors: list[BaseException] = []

    def _run(spec: LinkSpec) -> None:
        barrier.wait()
        try:
            SymlinkLinker(backup).link(spec)
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_run, args=(spec,)) for spec in specs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert [path.name for path in backup_root.iterdir()] == [RUN_STAMP]
    assert backup.created
    assert backup.path == (backup_root / RUN_STAMP).resolve()
    backed_up = sorted(
        path.read_text(encoding="utf-8") for path in (backup_root / RUN_STAMP).iterdir()
    )
    assert backed_up == sorted(f"old {index}" for index in range(workers))


def test_spec_with_another_backup_root_is_rejected(dirs: tuple[Path, Path, Path]) -> None:
    source, target, backup = dirs
    _write(source / ".zshrc", "zsh")
    _write(target / ".zshrc", "mine")

    with pytest.raises(LinkError, match="backup root"):
        _linker(backup).link(LinkSpec(source, target, target / "backup"))

    assert (target / ".zshrc").read_text(encoding="utf-8") == "mine"
    assert not (target / ".zshrc").is_symlink()
