import json
from unittest.mock import MagicMock, patch

from conftest import FakeStore, client_error

import runner

OBJECTS = {"data/a.log": b"ok", "data/b.log": b"ERROR here", "data/c.log": b"ERROR too"}


def registry_for(store):
    registry = MagicMock()
    registry.get.return_value = store
    return registry


def responses(out):
    return [json.loads(line) for line in out.splitlines() if line.startswith("{")]


@patch("runner.build_registry")
def test_runs_count_then_search(mock_build, capsys):
    mock_build.return_value = registry_for(FakeStore(OBJECTS))
    rc = runner.main(["--bucket", "b", "--folder", "data/", "--find", "ERROR", "--max-workers", "4"])
    assert rc == 0
    count, match = responses(capsys.readouterr().out)
    assert count["result_kind"] == "count"
    assert count["result"] == 3
    assert match["result_kind"] == "match"
    assert match["result"] == "data/b.log"
    mock_build.assert_called_once_with(4)


@patch("runner.build_registry")
def test_count_only_without_find(mock_build, capsys, monkeypatch):
    monkeypatch.delenv("FIND", raising=False)
    mock_build.return_value = registry_for(FakeStore(OBJECTS))
    assert runner.main(["--bucket", "b"]) == 0
    assert [r["result_kind"] for r in responses(capsys.readouterr().out)] == ["count"]


@patch("runner.build_registry")
def test_max_workers_is_clamped(mock_build, capsys):
    mock_build.return_value = registry_for(FakeStore(OBJECTS))
    assert runner.main(["--bucket", "b", "--max-workers", "0"]) == 0
    mock_build.assert_called_once_with(1)
    assert "out of range" in capsys.readouterr().err


@patch("runner.build_registry")
def test_listing_error_exits_nonzero(mock_build, capsys):
    store = FakeStore(OBJECTS, list_error=client_error("NoSuchBucket", "ListObjectsV2"))
    mock_build.return_value = registry_for(store)
    assert runner.main(["--bucket", "missing", "--find", "x"]) == 1
    captured = capsys.readouterr()
    assert "cannot list s3://missing/" in captured.err
    assert responses(captured.out) == []


def test_bucket_required(capsys, monkeypatch):
    monkeypatch.delenv("S3_BUCKET_NAME", raising=False)
    assert runner.main([]) == 2
    assert "required" in capsys.readouterr().err


def test_env_defaults(monkeypatch):
    monkeypatch.setenv("S3_BUCKET_NAME", "env-bucket")
    monkeypatch.setenv("FOLDER", "p/")
    monkeypatch.setenv("FIND", "needle")
    args = runner.parse_args([])
    assert (args.bucket, args.folder, args.find) == ("env-bucket", "p/", "needle")
