import json
import subprocess
from datetime import datetime, timezone
from pathlib import Path

import pytest

import tracker

NOW = datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc)
LEADERBOARD = [{"id": "a", "name": "A", "total_commits": 3, "color": "#111111"}]
HISTORY = [{"time": "12:05 PM", "timestamp": 1740830700000, "teams": {"a": 3}, "total": 3}]


def git(*args, cwd):
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout


def make_clone(tmp_path, with_remote=True):
    work = tmp_path / "work"
    if with_remote:
        remote = tmp_path / "remote.git"
        git("init", "--bare", str(remote), cwd=tmp_path)
        git("clone", str(remote), str(work), cwd=tmp_path)
        git("config", "user.email", "dev@example.com", cwd=work)
        git("config", "user.name", "dev", cwd=work)
        (work / "README.md").write_text("tracker\n")
        git("add", "README.md", cwd=work)
        git("commit", "-m", "init", cwd=work)
        git("push", "-u", "origin", "HEAD", cwd=work)
    else:
        work.mkdir()
        git("init", cwd=work)
    (work / "data").mkdir()
    return work


def test_write_artifacts(tmp_path):
    paths = tracker.write_artifacts(LEADERBOARD, HISTORY, str(tmp_path / "out"))
    assert [Path(p).name for p in paths] == ["leaderboard.json", "history.json"]
    assert json.loads(Path(paths[0]).read_text()) == LEADERBOARD
    assert json.loads(Path(paths[1]).read_text()) == HISTORY


def test_git_publish_commits_and_pushes(tmp_path):
    work = make_clone(tmp_path)
    data_dir = work / "data"

    tracker.publish(LEADERBOARD, HISTORY, str(data_dir), NOW, target="git", repo_dir=str(work))

    remote = tmp_path / "remote.git"
    log = git("log", "-1", "--format=%s|%an", cwd=remote)
    assert log.strip() == f"Automated data update: {NOW.isoformat()}|{tracker.GIT_USER_NAME}"
    files = git("ls-tree", "-r", "--name-only", "HEAD", cwd=remote).split()
    assert sorted(files) == ["README.md", "data/history.json", "data/leaderboard.json"]


def test_git_publish_failure_keeps_local_write(tmp_path):
    work = make_clone(tmp_path, with_remote=False)
    data_dir = work / "data"

    with pytest.raises(tracker.PublishError):
        tracker.publish(LEADERBOARD, HISTORY, str(data_dir), NOW, target="git", repo_dir=str(work))

    assert json.loads((data_dir / "leaderboard.json").read_text()) == LEADERBOARD


def test_hf_publish_uploads_both_files(tmp_path):
    class FakeApi:
        def __init__(self):
            self.calls = []

        def upload_folder(self, **kwargs):
            self.calls.append(kwargs)

    api = FakeApi()
    tracker.publish_with_hf(str(tmp_path), "msg", repo_id="org/commits", token="hf", api=api)

    call = api.calls[0]
    assert call["repo_id"] == "org/commits"
    assert call["repo_type"] == "dataset"
    assert call["commit_message"] == "msg"
    assert call["allow_patterns"] == ["leaderboard.json", "history.json"]


def test_hf_publish_failure_raises(tmp_path):
    class BrokenApi:
        def upload_folder(self, **kwargs):
            raise RuntimeError("401 Unauthorized")

    with pytest.raises(tracker.PublishError, match="401"):
        tracker.publish_with_hf(str(tmp_path), "msg", repo_id="org/commits", token="hf", api=BrokenApi())


def test_hf_publish_requires_repo(tmp_path, monkeypatch):
    monkeypatch.setattr(tracker, "HF_DATASET_REPO", None)
    with pytest.raises(tracker.PublishError, match="HF_DATASET_REPO"):
        tracker.publish_with_hf(str(tmp_path), "msg")


def test_unknown_target_raises(tmp_path):
    with pytest.raises(tracker.PublishError, match="Unknown publish target"):
        tracker.publish(LEADERBOARD, HISTORY, str(tmp_path), NOW, target="s3")
