import itertools
import os
import stat
import tarfile
from pathlib import Path

import pytest

from bucket_backup import archiver
from bucket_backup.archiver import (
    analyze_source,
    create_archive,
    extract_archive,
    is_excluded,
    list_archive,
)
from bucket_backup.errors import ArchiveError, ArchiveTimeoutError, Stage

from .conftest import write_file


@pytest.mark.parametrize(
    "rel_path,patterns,expected",
    [
        ("a.txt", ["logs"], False),
        ("logs", ["logs"], True),
        ("logs/out.log", ["logs"], True),
        ("logs/deep/nested.log", ["logs"], True),
        ("jobs/x/workspace", ["jobs/*/workspace"], True),
        ("jobs/x/workspace/tmp.log", ["jobs/*/workspace"], True),
        ("jobs/x/builds/1/log", ["jobs/*/workspace"], False),
        ("sub/logs/out.log", ["logs"], False),
        ("cache.tmp", ["*.tmp"], True),
        ("Logs/out.log", ["logs"], False),
    ],
)
def test_is_excluded(rel_path, patterns, expected):
    assert is_excluded(rel_path, patterns) is expected


def test_excluded_subpaths_left_out(tmp_path, source_tree):
    output = tmp_path / "out.tar.gz"

    result = create_archive(source_tree, ["jobs/*/workspace", "logs"], output)

    assert list_archive(output) == ["a.txt"]
    assert result.file_count == 1
    assert result.size_bytes == output.stat().st_size


def test_empty_archive_when_everything_is_excluded(tmp_path, source_tree):
    output = tmp_path / "empty.tar.gz"

    result = create_archive(source_tree, ["a.txt", "jobs", "logs"], output)

    assert result.file_count == 0
    assert list_archive(output) == []
    with tarfile.open(output, "r:gz") as tar:
        assert tar.getmembers() == []


def test_empty_source_tree(tmp_path):
    source = tmp_path / "empty"
    source.mkdir()

    result = create_archive(source, [], tmp_path / "out.tar.gz")

    assert result.file_count == 0
    assert result.path.exists()


def test_round_trip_preserves_content_and_permissions(tmp_path):
    source = tmp_path / "src"
    write_file(source, "bin/run.sh", "#!/bin/sh\necho hi\n").chmod(0o755)
    write_file(source, "conf/app.ini", "[app]\nname=x\n").chmod(0o640)
    (source / "empty_dir").mkdir()
    output = tmp_path / "out.tar.gz"

    create_archive(source, [], output)
    restored = tmp_path / "restored"
    extract_archive(output, restored)

    assert (restored / "bin/run.sh").read_text() == "#!/bin/sh\necho hi\n"
    assert (restored / "conf/app.ini").read_text() == "[app]\nname=x\n"
    assert stat.S_IMODE((restored / "bin/run.sh").stat().st_mode) == 0o755
    assert stat.S_IMODE((restored / "conf/app.ini").stat().st_mode) == 0o640
    assert (restored / "empty_dir").is_dir()


def test_symlinks_are_stored_not_followed(tmp_path):
    source = tmp_path / "src"
    write_file(source, "real/file.txt", "payload")
    os.symlink("real/file.txt", source / "link.txt")
    os.symlink("real", source / "linkdir")
    output = tmp_path / "out.tar.gz"

    create_archive(source, [], output)

    with tarfile.open(output, "r:gz") as tar:
        members = {m.name: m for m in tar.getmembers()}
    assert members["link.txt"].issym()
    assert members["link.txt"].linkname == "real/file.txt"
    assert members["linkdir"].issym()
    assert "linkdir/file.txt" not in members


def test_missing_source_root_raises(tmp_path):
    with pytest.raises(ArchiveError) as excinfo:
        create_archive(tmp_path / "missing", [], tmp_path / "out.tar.gz")
    assert excinfo.value.stage is Stage.ARCHIVE


def test_unwritable_output_leaves_no_file(tmp_path, source_tree):
    output = tmp_path / "no-such-dir" / "out.tar.gz"

    with pytest.raises(ArchiveError):
        create_archive(source_tree, [], output)

    assert not output.exists()
    assert not output.with_name(output.name + ".partial").exists()


def test_timeout_discards_partial_archive(tmp_path, source_tree, monkeypatch):
    ticks = itertools.count(0, 100)
    monkeypatch.setattr(archiver.time, "monotonic", lambda: next(ticks))
    output = tmp_path / "out.tar.gz"

    with pytest.raises(ArchiveTimeoutError) as excinfo:
        create_archive(source_tree, [], output, timeout=150)

    assert isinstance(excinfo.value, TimeoutError)
    assert not output.exists()
    assert not output.with_name(output.name + ".partial").exists()


def test_existing_output_is_overwritten(tmp_path, source_tree):
    output = tmp_path / "out.tar.gz"
    output.write_bytes(b"leftover from a crashed run")

    create_archive(source_tree, ["jobs", "logs"], output)

    assert list_archive(output) == ["a.txt"]


def test_analyze_source_lists_included_and_excluded(source_tree):
    analysis = analyze_source(source_tree, ["jobs/*/workspace", "logs"])

    assert analysis.files == ["a.txt"]
    assert analysis.total_size == len("alpha")
    assert "logs" in analysis.excluded
    assert "jobs/x/workspace" in analysis.excluded
    # pruned directories are not descended
    assert "logs/out.log" not in analysis.excluded


def test_extract_failure_reports_extract_stage(tmp_path):
    bogus = tmp_path / "bogus.tar.gz"
    bogus.write_bytes(b"not a tarball")

    with pytest.raises(ArchiveError) as excinfo:
        extract_archive(bogus, tmp_path / "dest")

    assert excinfo.value.stage is Stage.EXTRACT


def test_archive_written_outside_partial_name(tmp_path, source_tree):
    output = tmp_path / "run.tar.gz"
    create_archive(source_tree, [], output)
    assert sorted(p.name for p in Path(tmp_path).glob("run.tar.gz*")) == ["run.tar.gz"]


def test_extract_without_tarfile_filters(tmp_path, source_tree, monkeypatch):
    output = tmp_path / "out.tar.gz"
    create_archive(source_tree, [], output)
    monkeypatch.delattr(tarfile, "data_filter")

    with pytest.raises(ArchiveError, match="extraction filters") as excinfo:
        extract_archive(output, tmp_path / "dest")

    assert excinfo.value.stage is Stage.EXTRACT
    assert not (tmp_path / "dest").exists()
